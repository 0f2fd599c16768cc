"""
Record Studio
Identity tables backing the default permission oracle.

Models:
    - User: a caller identity; ``is_superuser`` is the explicit
      override capability.
    - UserPermission: one granted permission key per row.
"""

from datetime import datetime, timezone

from app.models import _uuid, db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    username = db.Column(db.String(150), nullable=False, unique=True)
    is_superuser = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )

    permissions = db.relationship(
        "UserPermission", backref="user", cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "is_superuser": self.is_superuser,
            "permissions": sorted(p.permission_key for p in self.permissions),
        }


class UserPermission(db.Model):
    __tablename__ = "user_permissions"
    __table_args__ = (
        db.UniqueConstraint("user_id", "permission_key", name="uq_user_permission"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.String(36),
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    permission_key = db.Column(db.String(200), nullable=False)
