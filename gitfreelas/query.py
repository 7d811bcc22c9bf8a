"""Row fetching, ordering, cursor pagination and result projection."""

from sqlalchemy import select, func, and_, or_, true, false

from .errors import QueryValidationError
from .filters import build_where
from .registry import ModelInfo, get_model_info

DIRECTIONS = ("asc", "desc")
RELATION_ARGS = {"select", "include", "omit", "where", "order_by", "cursor", "take", "skip", "distinct"}


def normalize_order_by(info: ModelInfo, order_by) -> list[tuple[str, str, str | None]]:
    """Return ``[(field, direction, nulls)]`` with the primary key appended.

    Nullable fields without an explicit ``nulls`` sort NULL as the smallest
    value on every dialect.
    """
    entries = order_by if isinstance(order_by, (list, tuple)) else [order_by] if order_by else []
    orders = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise QueryValidationError(f"Invalid order_by entry {entry!r}", model=info.name)
        for name, spec in entry.items():
            info.check_field(name)
            nulls = None
            if isinstance(spec, dict):
                direction = spec.get("sort", "asc")
                nulls = spec.get("nulls")
                if nulls not in (None, "first", "last"):
                    raise QueryValidationError(f"Invalid nulls position `{nulls}`", model=info.name)
            else:
                direction = spec
            if direction not in DIRECTIONS:
                raise QueryValidationError(
                    f"Invalid sort direction `{direction}` for `{name}`", model=info.name
                )
            if nulls is None and name in info.nullable:
                nulls = "first" if direction == "asc" else "last"
            orders.append((name, direction, nulls))

    if info.primary_key not in [name for name, _, _ in orders]:
        orders.append((info.primary_key, "asc", None))
    return orders


def reverse_orders(orders):
    flipped = []
    for name, direction, nulls in orders:
        direction = "desc" if direction == "asc" else "asc"
        if nulls is not None:
            nulls = "last" if nulls == "first" else "first"
        flipped.append((name, direction, nulls))
    return flipped


def order_clauses(entity, orders):
    clauses = []
    for name, direction, nulls in orders:
        column = getattr(entity, name)
        clause = column.asc() if direction == "asc" else column.desc()
        if nulls == "first":
            clause = clause.nulls_first()
        elif nulls == "last":
            clause = clause.nulls_last()
        clauses.append(clause)
    return clauses


def cursor_condition(entity, orders, cursor_row):
    """Rows at or after ``cursor_row`` in ``orders``.

    Expands the row-value comparison ``(a, b, id) >= (va, vb, vid)`` into a
    disjunction of prefix matches, with explicit NULL placement.
    """
    branches = []
    equal_prefix = []
    for name, direction, nulls in orders:
        column = getattr(entity, name)
        value = getattr(cursor_row, name)
        if value is None:
            after = column.is_not(None) if nulls == "first" else false()
            same = column.is_(None)
        else:
            after = column > value if direction == "asc" else column < value
            if nulls == "last":
                after = or_(after, column.is_(None))
            same = column == value
        branches.append(and_(true(), *equal_prefix, after))
        equal_prefix.append(same)
    branches.append(and_(*equal_prefix))
    return or_(*branches)


def ensure_unique_where(info: ModelInfo, where, what="where"):
    if not isinstance(where, dict) or not where:
        raise QueryValidationError(f"`{what}` must name a unique field of `{info.name}`", model=info.name)
    for name in info.unique_fields:
        value = where.get(name)
        if name not in where or value is None:
            continue
        if not isinstance(value, dict) or set(value) == {"equals"}:
            return
    raise QueryValidationError(
        f"`{what}` on `{info.name}` needs a unique field, one of {sorted(info.unique_fields)}",
        model=info.name,
    )


def window_statement(session, info: ModelInfo, where=None, order_by=None, cursor=None,
                     take=None, skip=None, paginate=True):
    """Build ``select(model)`` with filters, cursor, ordering and limits.

    Returns ``(statement, reversed)``; when ``take`` is negative the
    statement reads backwards and the caller reverses the rows.
    """
    model = info.model
    orders = normalize_order_by(info, order_by)
    backwards = take is not None and take < 0
    if backwards:
        orders = reverse_orders(orders)

    stmt = select(model).where(build_where(info, where))
    if cursor is not None:
        ensure_unique_where(info, cursor, "cursor")
        cursor_row = session.execute(
            select(model).where(build_where(info, cursor))
        ).scalars().first()
        if cursor_row is None:
            stmt = stmt.where(false())
        else:
            stmt = stmt.where(cursor_condition(model, orders, cursor_row))
    stmt = stmt.order_by(*order_clauses(model, orders))

    if paginate:
        if skip:
            if skip < 0:
                raise QueryValidationError("`skip` must be positive", model=info.name)
            stmt = stmt.offset(skip)
        if take is not None:
            stmt = stmt.limit(abs(take))
    return stmt, backwards


def fetch(session, info: ModelInfo, where=None, order_by=None, cursor=None, take=None,
          skip=None, distinct=None) -> list:
    """Return mapped objects matching the query arguments."""
    if distinct:
        distinct = [distinct] if isinstance(distinct, str) else list(distinct)
        for name in distinct:
            info.check_field(name)

    stmt, backwards = window_statement(
        session, info, where, order_by, cursor, take, skip, paginate=not distinct
    )
    rows = list(
        session.execute(stmt.execution_options(populate_existing=True)).scalars().all()
    )

    if distinct:
        seen = set()
        unique_rows = []
        for row in rows:
            key = tuple(getattr(row, name) for name in distinct)
            if key in seen:
                continue
            seen.add(key)
            unique_rows.append(row)
        rows = unique_rows[skip or 0:]
        if take is not None:
            rows = rows[:abs(take)]

    if backwards:
        rows.reverse()
    return rows


def validate_projection(info: ModelInfo, select_=None, include=None, omit=None):
    if select_ is not None and include is not None:
        raise QueryValidationError("Please either use `include` or `select`, but not both", model=info.name)
    if select_ is not None and omit is not None:
        raise QueryValidationError("Please either use `omit` or `select`, but not both", model=info.name)
    for name in omit or {}:
        info.check_field(name)
    for name in include or {}:
        if name != "_count":
            info.check_relation(name)
    for name in select_ or {}:
        if name != "_count" and name not in info.fields and name not in info.relations:
            raise QueryValidationError(f"Unknown field `{name}` in select of `{info.name}`", model=info.name)


def _link_where(relation, row):
    return {remote: getattr(row, local) for local, remote in relation.pairs}


def load_relation(session, info: ModelInfo, row, name, spec):
    relation = info.check_relation(name)
    target = get_model_info(relation.target)
    spec = spec if isinstance(spec, dict) else {}
    unknown = set(spec) - RELATION_ARGS
    if unknown:
        raise QueryValidationError(f"Unknown arguments {sorted(unknown)} for relation `{name}`", model=info.name)

    link = _link_where(relation, row)
    if any(value is None for value in link.values()):
        return [] if relation.is_list else None

    if relation.is_list:
        where = {"AND": [link, spec["where"]]} if spec.get("where") else link
        rows = fetch(
            session, target, where,
            order_by=spec.get("order_by"), cursor=spec.get("cursor"),
            take=spec.get("take"), skip=spec.get("skip"), distinct=spec.get("distinct"),
        )
        return [serialize(session, target, child, spec.get("select"), spec.get("include"), spec.get("omit"))
                for child in rows]

    rows = fetch(session, target, link, take=1)
    if not rows:
        return None
    return serialize(session, target, rows[0], spec.get("select"), spec.get("include"), spec.get("omit"))


def count_relations(session, info: ModelInfo, row, spec):
    """Sizes of list relations for ``_count`` projections."""
    if spec is True:
        selected = {name: True for name, relation in info.relations.items() if relation.is_list}
    elif isinstance(spec, dict) and isinstance(spec.get("select"), dict):
        selected = spec["select"]
    else:
        raise QueryValidationError("`_count` expects True or {'select': {...}}", model=info.name)

    counts = {}
    for name, relation_spec in selected.items():
        if not relation_spec:
            continue
        relation = info.check_relation(name)
        if not relation.is_list:
            raise QueryValidationError(f"`_count` only supports list relations, not `{name}`", model=info.name)
        target = get_model_info(relation.target)
        where = _link_where(relation, row)
        if isinstance(relation_spec, dict) and relation_spec.get("where"):
            where = {"AND": [where, relation_spec["where"]]}
        counts[name] = session.execute(
            select(func.count()).select_from(target.model).where(build_where(target, where))
        ).scalar_one()
    return counts


def serialize(session, info: ModelInfo, row, select_=None, include=None, omit=None) -> dict:
    """Turn a mapped object into a plain dict shaped by the projection."""
    validate_projection(info, select_, include, omit)
    data = {}
    if select_ is not None:
        for name, spec in select_.items():
            if not spec:
                continue
            if name == "_count":
                data[name] = count_relations(session, info, row, spec)
            elif name in info.fields:
                data[name] = getattr(row, name)
            else:
                data[name] = load_relation(session, info, row, name, spec)
        return data

    omit = omit or {}
    for name in info.fields:
        if not omit.get(name):
            data[name] = getattr(row, name)
    for name, spec in (include or {}).items():
        if not spec:
            continue
        if name == "_count":
            data[name] = count_relations(session, info, row, spec)
        else:
            data[name] = load_relation(session, info, row, name, spec)
    return data
