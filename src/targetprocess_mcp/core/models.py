from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# --- Remote records (validated at the boundary) ---------------------------- #


class EntityTypeRecord(BaseModel):
    """One element of the /EntityTypes listing."""

    id: Optional[int] = Field(default=None, alias="Id")
    name: str = Field(alias="Name")
    description: Optional[str] = Field(default=None, alias="Description")
    is_extendable: Optional[bool] = Field(default=None, alias="IsExtendable")

    # unknown keys are kept but never relied upon
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Property(BaseModel):
    name: str = Field(alias="Name")
    type: Optional[str] = Field(default=None, alias="Type")
    is_required: bool = Field(default=False, alias="IsRequired")
    is_read_only: bool = Field(default=False, alias="IsReadOnly")
    description: Optional[str] = Field(default=None, alias="Description")
    allowed_values: Optional[List[Any]] = Field(default=None, alias="AllowedValues")

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Relationship(BaseModel):
    name: str = Field(alias="Name")
    target_type: str = Field(
        validation_alias=AliasChoices("target_type", "Type", "EntityType"),
    )
    cardinality: Literal["one", "many"] = "one"

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class EntityTypeDescriptor(BaseModel):
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    supports_custom_fields: Optional[bool] = None
    is_custom: bool = False
    # stages that contributed to this descriptor, in order
    sources: Tuple[str, ...] = ()

    model_config = ConfigDict(extra="allow")


# --- Bundle --------------------------------------------------------------- #


class MetadataBundle(BaseModel):
    entity_types: List[EntityTypeDescriptor] = Field(default_factory=list)
    relationships_by_type: Dict[str, List[Relationship]] = Field(default_factory=dict)
    properties_by_type: Dict[str, List[Property]] = Field(default_factory=dict)
    degraded: bool = False
    degradation_reasons: List[str] = Field(default_factory=list)
    fetched_at: float = 0.0

    model_config = ConfigDict(frozen=True)

    def type_names(self) -> List[str]:
        return [d.name for d in self.entity_types]

    def descriptor(self, name: str) -> Optional[EntityTypeDescriptor]:
        for d in self.entity_types:
            if d.name == name:
                return d
        return None

    def properties_for(self, name: str) -> List[Property]:
        return list(self.properties_by_type.get(name, []))

    def relationships_for(self, name: str) -> List[Relationship]:
        return list(self.relationships_by_type.get(name, []))


# --- Input Models (Tool Payloads) ------------------------------------------ #


class SearchEntitiesInput(BaseModel):
    entity_type: str
    # {"field": ..., "op": ..., "value": ...} / {"and": [...]} / {"or": [...]} / {"not": {...}}
    # / {"preset": name, "variables": {...}}
    filter: Optional[Dict[str, Any]] = None
    include: List[str] = Field(default_factory=list)
    # "Field", "Field desc" or {"field": ..., "direction": "asc"|"desc"}
    order_by: List[Any] = Field(default_factory=list)
    take: int = 25
    skip: int = 0

    model_config = ConfigDict(extra="forbid")


class GetEntityInput(BaseModel):
    entity_type: str
    id: int
    include: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class CreateEntityInput(BaseModel):
    entity_type: str
    fields: Dict[str, Any]

    model_config = ConfigDict(extra="forbid")


class UpdateEntityInput(BaseModel):
    entity_type: str
    id: int
    fields: Dict[str, Any]

    model_config = ConfigDict(extra="forbid")


__all__ = [
    "SearchEntitiesInput",
    "GetEntityInput",
    "CreateEntityInput",
    "UpdateEntityInput",
    "EntityTypeRecord",
    "Property",
    "Relationship",
    "EntityTypeDescriptor",
    "MetadataBundle",
]
