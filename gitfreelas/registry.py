"""Model registry built from the SQLAlchemy mappers.

Each mapped class gets a :class:`ModelInfo` keyed by its delegate name
(``Task`` -> ``task``, ``TaskDeveloper`` -> ``task_developer``).
"""

import re
from dataclasses import dataclass, field

from sqlalchemy import Enum, Float, Integer, Numeric, String, Text
from sqlalchemy.orm import RelationshipDirection

from .errors import QueryValidationError
from .models import Base


@dataclass
class RelationInfo:
    name: str
    target: str
    is_list: bool
    # Pairs of (column on this model, column on the target model)
    pairs: list[tuple[str, str]]
    # True when the foreign key lives on this model
    owns_foreign_key: bool


@dataclass
class ModelInfo:
    name: str
    model: type
    fields: dict = field(default_factory=dict)
    nullable: set = field(default_factory=set)
    primary_key: str = "id"
    unique_fields: set = field(default_factory=set)
    relations: dict = field(default_factory=dict)

    def is_numeric(self, name) -> bool:
        return isinstance(self.fields.get(name), (Integer, Float, Numeric))

    def is_integer(self, name) -> bool:
        return isinstance(self.fields.get(name), Integer)

    def is_string(self, name) -> bool:
        column_type = self.fields.get(name)
        return isinstance(column_type, (String, Text)) and not isinstance(column_type, Enum)

    def check_field(self, name):
        if name not in self.fields:
            raise QueryValidationError(
                f"Unknown field `{name}` on model `{self.name}`", model=self.name
            )

    def check_relation(self, name) -> RelationInfo:
        if name not in self.relations:
            raise QueryValidationError(
                f"Unknown relation `{name}` on model `{self.name}`", model=self.name
            )
        return self.relations[name]


def delegate_name(class_name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", class_name).lower()


def _build(base) -> dict:
    registry = {}
    for mapper in base.registry.mappers:
        info = ModelInfo(name=delegate_name(mapper.class_.__name__), model=mapper.class_)
        for attr in mapper.column_attrs:
            column = attr.columns[0]
            info.fields[attr.key] = column.type
            if column.nullable:
                info.nullable.add(attr.key)
            if column.primary_key:
                info.primary_key = attr.key
                info.unique_fields.add(attr.key)
            if column.unique:
                info.unique_fields.add(attr.key)
        registry[info.name] = info

    for mapper in base.registry.mappers:
        info = registry[delegate_name(mapper.class_.__name__)]
        for rel in mapper.relationships:
            info.relations[rel.key] = RelationInfo(
                name=rel.key,
                target=delegate_name(rel.mapper.class_.__name__),
                is_list=bool(rel.uselist),
                pairs=[(local.key, remote.key) for local, remote in rel.local_remote_pairs],
                owns_foreign_key=rel.direction is RelationshipDirection.MANYTOONE,
            )
    return registry


_REGISTRY = _build(Base)


def get_model_info(name_or_model) -> ModelInfo:
    if isinstance(name_or_model, type):
        name_or_model = delegate_name(name_or_model.__name__)
    try:
        return _REGISTRY[name_or_model]
    except KeyError:
        raise QueryValidationError(f"Unknown model `{name_or_model}`") from None
