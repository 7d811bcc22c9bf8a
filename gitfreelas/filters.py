"""Translate where-dicts into SQLAlchemy boolean expressions.

A where-dict maps field names to values or operator dicts, relation names to
relation filters, and the logical keys ``AND``/``OR``/``NOT`` to nested
where-dicts::

    {
        "status": {"in": ["OPEN", "APPLIED"]},
        "deleted_at": None,
        "OR": [
            {"title": {"contains": "api", "mode": "insensitive"}},
            {"description": {"contains": "api", "mode": "insensitive"}},
        ],
        "task_developer": {"is": {"developer_id": "u1"}},
    }
"""

from sqlalchemy import and_, or_, not_, exists, func, true, false
from sqlalchemy.orm import aliased

from .errors import QueryValidationError
from .registry import ModelInfo, get_model_info

SCALAR_OPERATORS = {
    "equals", "not", "in", "not_in", "lt", "lte", "gt", "gte",
    "contains", "starts_with", "ends_with", "mode",
}
LIST_RELATION_OPERATORS = {"some", "every", "none"}
SINGLE_RELATION_OPERATORS = {"is", "is_not"}
LOGICAL_KEYS = {"AND", "OR", "NOT"}


def _as_list(value):
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _is_operator_dict(value) -> bool:
    return isinstance(value, dict) and bool(value) and set(value) <= SCALAR_OPERATORS


def build_where(info: ModelInfo, where, entity=None):
    """Return a boolean clause for ``where`` against ``entity``.

    ``entity`` defaults to the mapped class; relation filters pass an alias
    so the same table can appear more than once in a statement.
    """
    entity = entity if entity is not None else info.model
    if not where:
        return true()
    if not isinstance(where, dict):
        raise QueryValidationError(
            f"Expected a where dict for `{info.name}`, got {type(where).__name__}",
            model=info.name,
        )

    clauses = []
    for key, value in where.items():
        if key == "AND":
            clauses.append(and_(true(), *[build_where(info, sub, entity) for sub in _as_list(value)]))
        elif key == "OR":
            subs = [build_where(info, sub, entity) for sub in _as_list(value)]
            clauses.append(or_(*subs) if subs else false())
        elif key == "NOT":
            clauses.extend(not_(build_where(info, sub, entity)) for sub in _as_list(value))
        elif key in info.fields:
            clauses.append(_scalar_filter(info, key, getattr(entity, key), value))
        elif key in info.relations:
            clauses.append(_relation_filter(info, key, value, entity))
        else:
            raise QueryValidationError(
                f"Unknown argument `{key}` in where of `{info.name}`", model=info.name
            )
    return and_(true(), *clauses)


def _scalar_filter(info: ModelInfo, name: str, column, value):
    if not _is_operator_dict(value):
        if isinstance(value, dict):
            raise QueryValidationError(
                f"Unknown filter operator in `{name}`: {sorted(set(value) - SCALAR_OPERATORS)}",
                model=info.name,
            )
        return column.is_(None) if value is None else column == value

    mode = value.get("mode", "default")
    if mode not in ("default", "insensitive"):
        raise QueryValidationError(f"Invalid mode `{mode}` on `{name}`", model=info.name)
    insensitive = mode == "insensitive"
    if insensitive and not info.is_string(name):
        raise QueryValidationError(
            f"`mode: insensitive` is only supported on string fields, not `{name}`",
            model=info.name,
        )

    clauses = []
    for op, operand in value.items():
        if op == "mode":
            continue
        if op == "equals":
            if operand is None:
                clauses.append(column.is_(None))
            elif insensitive:
                clauses.append(func.lower(column) == str(operand).lower())
            else:
                clauses.append(column == operand)
        elif op == "not":
            if isinstance(operand, dict):
                nested = dict(operand)
                if insensitive:
                    nested.setdefault("mode", "insensitive")
                clauses.append(not_(_scalar_filter(info, name, column, nested)))
            elif operand is None:
                clauses.append(column.is_not(None))
            else:
                clauses.append(column != operand)
        elif op == "in":
            clauses.append(column.in_(_as_list(operand)))
        elif op == "not_in":
            clauses.append(column.not_in(_as_list(operand)))
        elif op == "lt":
            clauses.append(column < operand)
        elif op == "lte":
            clauses.append(column <= operand)
        elif op == "gt":
            clauses.append(column > operand)
        elif op == "gte":
            clauses.append(column >= operand)
        elif op in ("contains", "starts_with", "ends_with"):
            if not info.is_string(name):
                raise QueryValidationError(
                    f"`{op}` is only supported on string fields, not `{name}`", model=info.name
                )
            method = {"contains": "contains", "starts_with": "startswith", "ends_with": "endswith"}[op]
            if insensitive:
                method = "i" + method
            clauses.append(getattr(column, method)(operand, autoescape=True))
    return and_(true(), *clauses)


def _join_condition(relation, source, target):
    return and_(*[
        getattr(target, remote) == getattr(source, local)
        for local, remote in relation.pairs
    ])


def _relation_filter(info: ModelInfo, name: str, value, entity):
    relation = info.relations[name]
    target_info = get_model_info(relation.target)
    target = aliased(target_info.model)
    joined = _join_condition(relation, entity, target)

    if relation.is_list:
        if not isinstance(value, dict) or not set(value) <= LIST_RELATION_OPERATORS:
            raise QueryValidationError(
                f"List relation `{name}` expects `some`, `every` or `none`", model=info.name
            )
        clauses = []
        for op, sub in value.items():
            condition = build_where(target_info, sub, target)
            if op == "some":
                clauses.append(exists().where(joined, condition))
            elif op == "every":
                clauses.append(not_(exists().where(joined, not_(condition))))
            else:
                clauses.append(not_(exists().where(joined, condition)))
        return and_(true(), *clauses)

    if value is None:
        value = {"is": None}
    elif not (isinstance(value, dict) and value and set(value) <= SINGLE_RELATION_OPERATORS):
        value = {"is": value}

    clauses = []
    for op, sub in value.items():
        if sub is None:
            present = _relation_present(relation, entity, joined)
            clauses.append(not_(present) if op == "is" else present)
            continue
        match = exists().where(joined, build_where(target_info, sub, target))
        clauses.append(match if op == "is" else not_(match))
    return and_(true(), *clauses)


def _relation_present(relation, entity, joined):
    if relation.owns_foreign_key:
        return and_(*[getattr(entity, local).is_not(None) for local, _ in relation.pairs])
    return exists().where(joined)
