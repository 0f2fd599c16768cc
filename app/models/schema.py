"""
Record Studio
Schema domain models.

Models:
    - ValidationRuleset: named, reusable regex constraint for string properties.
    - DataModel: user-defined record schema ("Model").
    - ModelProperty: one typed, optionally constrained field of a DataModel.
"""

from datetime import datetime, timezone

from app.models import _uuid, db


def _utcnow():
    return datetime.now(timezone.utc)


# ── Constants ────────────────────────────────────────────────────────────────

PROPERTY_TYPES = {"string", "number", "boolean", "date", "relationship"}
RELATIONSHIP_TYPES = {"one", "many"}


class ValidationRuleset(db.Model):
    """Regex constraint that string properties can reference by id."""

    __tablename__ = "validation_rulesets"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False, unique=True)
    description = db.Column(db.Text, default="")
    regex_pattern = db.Column(db.String(1000), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "regex_pattern": self.regex_pattern,
        }

    def __repr__(self):
        return f"<ValidationRuleset {self.name}: {self.regex_pattern!r}>"


class DataModel(db.Model):
    """
    A record schema.  Properties are kept ordered by ``order_index``;
    ``workflow_id`` optionally attaches a state machine to every entity
    of this model.
    """

    __tablename__ = "data_models"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False, unique=True)
    description = db.Column(db.Text, default="")
    workflow_id = db.Column(
        db.String(36),
        db.ForeignKey("workflows.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    properties = db.relationship(
        "ModelProperty",
        backref="model",
        cascade="all, delete-orphan",
        order_by="ModelProperty.order_index",
        foreign_keys="ModelProperty.model_id",
    )
    workflow = db.relationship("Workflow", foreign_keys=[workflow_id])

    def property_by_name(self, name: str):
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    def property_by_id(self, property_id: str):
        for prop in self.properties:
            if prop.id == property_id:
                return prop
        return None

    def to_dict(self, include_properties: bool = True) -> dict:
        result = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "workflow_id": self.workflow_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_properties:
            result["properties"] = [p.to_dict() for p in self.properties]
        return result

    def __repr__(self):
        return f"<DataModel {self.name}>"


class ModelProperty(db.Model):
    """Typed field definition.  Constraint columns only apply to their type."""

    __tablename__ = "model_properties"
    __table_args__ = (
        db.UniqueConstraint("model_id", "name", name="uq_model_property_name"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    model_id = db.Column(
        db.String(36),
        db.ForeignKey("data_models.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(100), nullable=False)
    type = db.Column(
        db.String(20), nullable=False, default="string",
        comment="string | number | boolean | date | relationship",
    )
    required = db.Column(db.Boolean, nullable=False, default=False)
    order_index = db.Column(db.Integer, nullable=False, default=0)

    # string
    is_unique = db.Column(db.Boolean, nullable=False, default=False)
    validation_ruleset_id = db.Column(
        db.String(36),
        db.ForeignKey("validation_rulesets.id", ondelete="SET NULL"),
        nullable=True,
    )
    # number
    min_value = db.Column(db.Float, nullable=True)
    max_value = db.Column(db.Float, nullable=True)
    # relationship
    related_model_id = db.Column(
        db.String(36),
        db.ForeignKey("data_models.id", ondelete="SET NULL"),
        nullable=True,
    )
    relationship_type = db.Column(db.String(10), nullable=True, comment="one | many")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "model_id": self.model_id,
            "name": self.name,
            "type": self.type,
            "required": self.required,
            "order_index": self.order_index,
            "is_unique": self.is_unique,
            "validation_ruleset_id": self.validation_ruleset_id,
            "min_value": self.min_value,
            "max_value": self.max_value,
            "related_model_id": self.related_model_id,
            "relationship_type": self.relationship_type,
        }

    def __repr__(self):
        return f"<ModelProperty {self.name} ({self.type})>"
