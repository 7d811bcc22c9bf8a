"""Per-model query delegates.

Every public method takes plain-dict arguments and returns plain dicts.
Calls go through the client's middleware chain and run inside a session
scope: a fresh committed session on the root client, or the shared session
of an interactive transaction.
"""

import logging
import time

from sqlalchemy import select, delete, update, func, and_, or_, true, false
from sqlalchemy.exc import IntegrityError

from .errors import QueryValidationError, RecordNotFoundError, translate_integrity_error
from .filters import build_where, _scalar_filter
from .query import ensure_unique_where, fetch, serialize, validate_projection, window_statement
from .registry import ModelInfo, get_model_info

logger = logging.getLogger(__name__)

NUMBER_OPERATIONS = {"set", "increment", "decrement", "multiply", "divide"}
AGGREGATES = ("_count", "_sum", "_avg", "_min", "_max")
_AGGREGATE_FUNCTIONS = {"_sum": func.sum, "_avg": func.avg, "_min": func.min, "_max": func.max}


class ModelDelegate:
    def __init__(self, client, name: str):
        self._client = client
        self.info: ModelInfo = get_model_info(name)

    def __repr__(self):
        return f"<ModelDelegate {self.info.name}>"

    # Dispatch

    def _execute(self, action: str, args: dict):
        from .client import QueryParams

        def run(params):
            handler = getattr(self, f"_{params.action}")
            start = time.perf_counter()
            try:
                with self._client._session_scope() as session:
                    result = handler(session, **params.args)
            except IntegrityError as exc:
                raise translate_integrity_error(exc, model=self.info.name) from exc
            elapsed = (time.perf_counter() - start) * 1000
            level = logging.INFO if self._client.log_queries else logging.DEBUG
            logger.log(level, "%s.%s took %.1fms", params.model, params.action, elapsed)
            return result

        return self._client._dispatch(QueryParams(self.info.name, action, args), run)

    # Reads

    def find_unique(self, where, select=None, include=None, omit=None):
        return self._execute("find_unique", dict(where=where, select=select, include=include, omit=omit))

    def find_unique_or_throw(self, where, select=None, include=None, omit=None):
        result = self.find_unique(where, select=select, include=include, omit=omit)
        if result is None:
            raise RecordNotFoundError(f"No {self.info.name} found", model=self.info.name, meta={"where": where})
        return result

    def find_first(self, where=None, order_by=None, cursor=None, take=None, skip=None,
                   distinct=None, select=None, include=None, omit=None):
        return self._execute("find_first", dict(
            where=where, order_by=order_by, cursor=cursor, take=take, skip=skip,
            distinct=distinct, select=select, include=include, omit=omit,
        ))

    def find_first_or_throw(self, where=None, **kwargs):
        result = self.find_first(where, **kwargs)
        if result is None:
            raise RecordNotFoundError(f"No {self.info.name} found", model=self.info.name, meta={"where": where})
        return result

    def find_many(self, where=None, order_by=None, cursor=None, take=None, skip=None,
                  distinct=None, select=None, include=None, omit=None):
        return self._execute("find_many", dict(
            where=where, order_by=order_by, cursor=cursor, take=take, skip=skip,
            distinct=distinct, select=select, include=include, omit=omit,
        ))

    def count(self, where=None, order_by=None, cursor=None, take=None, skip=None, select=None):
        return self._execute("count", dict(
            where=where, order_by=order_by, cursor=cursor, take=take, skip=skip, select=select,
        ))

    def aggregate(self, where=None, order_by=None, cursor=None, take=None, skip=None, **aggregates):
        return self._execute("aggregate", dict(
            where=where, order_by=order_by, cursor=cursor, take=take, skip=skip, aggregates=aggregates,
        ))

    def group_by(self, by, where=None, having=None, order_by=None, take=None, skip=None, **aggregates):
        return self._execute("group_by", dict(
            by=by, where=where, having=having, order_by=order_by, take=take, skip=skip,
            aggregates=aggregates,
        ))

    # Writes

    def create(self, data, select=None, include=None, omit=None):
        return self._execute("create", dict(data=data, select=select, include=include, omit=omit))

    def create_many(self, data, skip_duplicates=False):
        return self._execute("create_many", dict(data=data, skip_duplicates=skip_duplicates))

    def update(self, where, data, select=None, include=None, omit=None):
        return self._execute("update", dict(where=where, data=data, select=select, include=include, omit=omit))

    def update_many(self, data, where=None):
        return self._execute("update_many", dict(where=where, data=data))

    def upsert(self, where, create, update, select=None, include=None, omit=None):
        return self._execute("upsert", dict(
            where=where, create=create, update=update, select=select, include=include, omit=omit,
        ))

    def delete(self, where, select=None, include=None, omit=None):
        return self._execute("delete", dict(where=where, select=select, include=include, omit=omit))

    def delete_many(self, where=None):
        return self._execute("delete_many", dict(where=where))

    # Handlers

    def _find_unique(self, session, where, select=None, include=None, omit=None):
        ensure_unique_where(self.info, where)
        validate_projection(self.info, select, include, omit)
        rows = fetch(session, self.info, where, take=1)
        return serialize(session, self.info, rows[0], select, include, omit) if rows else None

    def _find_first(self, session, take=None, select=None, include=None, omit=None, **query):
        validate_projection(self.info, select, include, omit)
        take = -1 if take is not None and take < 0 else 1
        rows = fetch(session, self.info, take=take, **query)
        return serialize(session, self.info, rows[0], select, include, omit) if rows else None

    def _find_many(self, session, select=None, include=None, omit=None, **query):
        validate_projection(self.info, select, include, omit)
        rows = fetch(session, self.info, **query)
        return [serialize(session, self.info, row, select, include, omit) for row in rows]

    def _count(self, session, where=None, order_by=None, cursor=None, take=None, skip=None, select=None):
        stmt, _ = window_statement(session, self.info, where, order_by, cursor, take, skip)
        window = stmt.subquery()
        if not select:
            return session.execute(select_count(window)).scalar_one()

        columns = []
        for name, wanted in select.items():
            if not wanted:
                continue
            if name == "_all":
                columns.append(func.count().label("_all"))
            else:
                self.info.check_field(name)
                columns.append(func.count(window.c[name]).label(name))
        row = session.execute(select_from_window(columns, window)).one()
        return dict(row._mapping)

    def _aggregate(self, session, where=None, order_by=None, cursor=None, take=None, skip=None,
                   aggregates=None):
        stmt, _ = window_statement(session, self.info, where, order_by, cursor, take, skip)
        window = stmt.subquery()
        columns, shape = self._aggregate_columns(aggregates or {}, lambda name: window.c[name])
        if not columns:
            raise QueryValidationError("aggregate needs at least one of " + ", ".join(AGGREGATES), model=self.info.name)
        row = session.execute(select_from_window(columns, window)).one()
        return _shape_aggregates(row._mapping, shape)

    def _group_by(self, session, by, where=None, having=None, order_by=None, take=None, skip=None,
                  aggregates=None):
        by = [by] if isinstance(by, str) else list(by or [])
        if not by:
            raise QueryValidationError("group_by needs at least one field in `by`", model=self.info.name)
        for name in by:
            self.info.check_field(name)

        model = self.info.model
        group_columns = [getattr(model, name) for name in by]
        agg_columns, shape = self._aggregate_columns(aggregates or {}, lambda name: getattr(model, name))
        stmt = (
            select(*group_columns, *agg_columns)
            .where(build_where(self.info, where))
            .group_by(*group_columns)
        )
        if having:
            stmt = stmt.having(self._build_having(having, by))
        stmt = stmt.order_by(*self._group_order(order_by, by))
        if skip:
            stmt = stmt.offset(skip)
        if take is not None:
            stmt = stmt.limit(take)

        results = []
        for row in session.execute(stmt):
            mapping = row._mapping
            item = {name: mapping[name] for name in by}
            item.update(_shape_aggregates(mapping, shape))
            results.append(item)
        return results

    def _create(self, session, data, select=None, include=None, omit=None):
        validate_projection(self.info, select, include, omit)
        row = self._create_row(session, self.info, data)
        session.flush()
        session.refresh(row)
        return serialize(session, self.info, row, select, include, omit)

    def _create_many(self, session, data, skip_duplicates=False):
        rows = list(data or [])
        for item in rows:
            for name in item:
                self.info.check_field(name)
        if skip_duplicates:
            rows = self._drop_duplicates(session, rows)
        session.add_all([self.info.model(**item) for item in rows])
        session.flush()
        return {"count": len(rows)}

    def _update(self, session, where, data, select=None, include=None, omit=None):
        ensure_unique_where(self.info, where)
        validate_projection(self.info, select, include, omit)
        row = self._require_row(session, self.info, where, "update")
        self._apply_update(session, self.info, row, data)
        session.flush()
        session.refresh(row)
        return serialize(session, self.info, row, select, include, omit)

    def _update_many(self, session, data, where=None):
        values = {}
        for name, value in (data or {}).items():
            if name in self.info.relations:
                raise QueryValidationError("update_many only accepts scalar fields", model=self.info.name)
            self.info.check_field(name)
            values[name] = self._scalar_value(self.info, self.info.model, name, value)
        if not values:
            return {"count": session.execute(select_count_where(self.info, where)).scalar_one()}
        stmt = (
            update(self.info.model)
            .where(build_where(self.info, where))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return {"count": session.execute(stmt).rowcount}

    def _upsert(self, session, where, create, update, select=None, include=None, omit=None):
        ensure_unique_where(self.info, where)
        if fetch(session, self.info, where, take=1):
            return self._update(session, where, update, select, include, omit)
        return self._create(session, create, select, include, omit)

    def _delete(self, session, where, select=None, include=None, omit=None):
        ensure_unique_where(self.info, where)
        validate_projection(self.info, select, include, omit)
        row = self._require_row(session, self.info, where, "delete")
        result = serialize(session, self.info, row, select, include, omit)
        pk = self.info.primary_key
        session.execute(
            delete(self.info.model)
            .where(getattr(self.info.model, pk) == getattr(row, pk))
            .execution_options(synchronize_session=False)
        )
        session.expunge(row)
        return result

    def _delete_many(self, session, where=None):
        stmt = (
            delete(self.info.model)
            .where(build_where(self.info, where))
            .execution_options(synchronize_session=False)
        )
        return {"count": session.execute(stmt).rowcount}

    # Write helpers

    def _require_row(self, session, info, where, action):
        rows = fetch(session, info, where, take=1)
        if not rows:
            raise RecordNotFoundError(
                f"An operation failed because it depends on one or more records that were "
                f"required but not found. No {info.name} found for {action}.",
                model=info.name, meta={"where": where},
            )
        return rows[0]

    def _create_row(self, session, info: ModelInfo, data, links=None):
        if not isinstance(data, dict):
            raise QueryValidationError(f"`data` for {info.name} must be a dict", model=info.name)
        scalars = dict(links or {})
        deferred = []
        for name, value in data.items():
            if name in info.fields:
                scalars[name] = value
            elif name in info.relations:
                relation = info.relations[name]
                if relation.owns_foreign_key:
                    target = self._resolve_parent(session, info, relation, value)
                    for local, remote in relation.pairs:
                        scalars[local] = getattr(target, remote)
                else:
                    deferred.append((relation, value))
            else:
                raise QueryValidationError(f"Unknown argument `{name}` in data of `{info.name}`", model=info.name)

        row = info.model(**scalars)
        session.add(row)
        session.flush()
        for relation, value in deferred:
            self._write_children(session, info, row, relation, value)
        return row

    def _resolve_parent(self, session, info, relation, value):
        """Find or create the row a foreign key on ``info`` points at."""
        target = get_model_info(relation.target)
        if not isinstance(value, dict) or len(value) != 1:
            raise QueryValidationError(
                f"Relation `{relation.name}` expects exactly one of connect, create, connect_or_create",
                model=info.name,
            )
        op, arg = next(iter(value.items()))
        if op == "connect":
            ensure_unique_where(target, arg, "connect")
            return self._require_row(session, target, arg, "connect")
        if op == "create":
            return self._create_row(session, target, arg)
        if op == "connect_or_create":
            ensure_unique_where(target, arg.get("where"), "connect_or_create.where")
            rows = fetch(session, target, arg["where"], take=1)
            return rows[0] if rows else self._create_row(session, target, arg["create"])
        raise QueryValidationError(f"Unsupported operation `{op}` on relation `{relation.name}`", model=info.name)

    def _write_children(self, session, info, row, relation, value):
        """Nested writes on a relation whose foreign key lives on the target."""
        target = get_model_info(relation.target)
        links = {remote: getattr(row, local) for local, remote in relation.pairs}
        if not isinstance(value, dict):
            raise QueryValidationError(f"Invalid nested write on `{relation.name}`", model=info.name)

        for op, arg in value.items():
            items = arg if isinstance(arg, list) else [arg]
            if op == "create":
                for item in items:
                    self._create_row(session, target, item, links)
            elif op == "connect":
                for item in items:
                    ensure_unique_where(target, item, "connect")
                    child = self._require_row(session, target, item, "connect")
                    for name, link_value in links.items():
                        setattr(child, name, link_value)
            elif op == "connect_or_create":
                for item in items:
                    rows = fetch(session, target, item["where"], take=1)
                    if rows:
                        for name, link_value in links.items():
                            setattr(rows[0], name, link_value)
                    else:
                        self._create_row(session, target, item["create"], links)
            elif op == "disconnect":
                if any(name not in target.nullable for name in links):
                    raise QueryValidationError(
                        f"The change you are trying to make would violate the required relation `{relation.name}`",
                        model=info.name,
                    )
                where = links if relation.is_list is False or arg is True else {"AND": [links, {"OR": items}]}
                session.execute(
                    update(target.model).where(build_where(target, where))
                    .values(**{name: None for name in links})
                    .execution_options(synchronize_session=False)
                )
            elif op == "delete":
                where = links if arg is True else {"AND": [links, {"OR": items}]}
                if arg is True and relation.is_list:
                    raise QueryValidationError("`delete: True` needs a to-one relation", model=info.name)
                if not relation.is_list:
                    self._require_row(session, target, links, "delete")
                session.execute(
                    delete(target.model).where(build_where(target, where))
                    .execution_options(synchronize_session=False)
                )
            else:
                raise QueryValidationError(f"Unsupported operation `{op}` on relation `{relation.name}`", model=info.name)
        session.flush()

    def _apply_update(self, session, info, row, data):
        if not isinstance(data, dict):
            raise QueryValidationError(f"`data` for {info.name} must be a dict", model=info.name)
        for name, value in data.items():
            if name in info.fields:
                setattr(row, name, self._scalar_value(info, info.model, name, value))
            elif name in info.relations:
                relation = info.relations[name]
                if relation.owns_foreign_key:
                    if isinstance(value, dict) and value.get("disconnect"):
                        if any(local not in info.nullable for local, _ in relation.pairs):
                            raise QueryValidationError(
                                f"The change you are trying to make would violate the required relation `{name}`",
                                model=info.name,
                            )
                        for local, _ in relation.pairs:
                            setattr(row, local, None)
                        continue
                    target = self._resolve_parent(session, info, relation, value)
                    for local, remote in relation.pairs:
                        setattr(row, local, getattr(target, remote))
                else:
                    session.flush()
                    self._write_children(session, info, row, relation, value)
            else:
                raise QueryValidationError(f"Unknown argument `{name}` in data of `{info.name}`", model=info.name)

    def _scalar_value(self, info, entity, name, value):
        if not (isinstance(value, dict) and value and set(value) <= NUMBER_OPERATIONS):
            return value
        if len(value) != 1:
            raise QueryValidationError(f"Only one update operation is allowed on `{name}`", model=info.name)
        op, operand = next(iter(value.items()))
        if op == "set":
            return operand
        if not info.is_numeric(name):
            raise QueryValidationError(f"`{op}` is only supported on numeric fields, not `{name}`", model=info.name)
        column = getattr(entity, name)
        if op == "increment":
            return column + operand
        if op == "decrement":
            return column - operand
        if op == "multiply":
            return column * operand
        if info.is_integer(name):
            return column // operand
        return column / operand

    def _drop_duplicates(self, session, rows):
        """Drop rows colliding on a unique field, in the table or the batch."""
        existing = {}
        for name in self.info.unique_fields:
            values = [item[name] for item in rows if item.get(name) is not None]
            if not values:
                continue
            column = getattr(self.info.model, name)
            existing[name] = set(session.execute(select(column).where(column.in_(values))).scalars())

        kept = []
        for item in rows:
            duplicate = False
            for name in self.info.unique_fields:
                value = item.get(name)
                if value is None:
                    continue
                seen = existing.setdefault(name, set())
                if value in seen:
                    duplicate = True
                    break
            if duplicate:
                continue
            for name in self.info.unique_fields:
                if item.get(name) is not None:
                    existing[name].add(item[name])
            kept.append(item)
        return kept

    # Aggregate helpers

    def _aggregate_columns(self, aggregates, column_for):
        columns = []
        shape = []
        for key, spec in aggregates.items():
            if key not in AGGREGATES:
                raise QueryValidationError(f"Unknown aggregate `{key}`", model=self.info.name)
            if not spec:
                continue
            if key == "_count" and spec is True:
                columns.append(func.count().label("_count"))
                shape.append(("_count", None, "_count"))
                continue
            if not isinstance(spec, dict):
                raise QueryValidationError(f"`{key}` expects a dict of fields", model=self.info.name)
            for name, wanted in spec.items():
                if not wanted:
                    continue
                label = f"{key}__{name}"
                if key == "_count":
                    expr = func.count() if name == "_all" else func.count(column_for(self._checked(name)))
                else:
                    self.info.check_field(name)
                    if key in ("_sum", "_avg") and not self.info.is_numeric(name):
                        raise QueryValidationError(f"`{key}` needs a numeric field, not `{name}`", model=self.info.name)
                    expr = _AGGREGATE_FUNCTIONS[key](column_for(name))
                columns.append(expr.label(label))
                shape.append((key, name, label))
        return columns, shape

    def _checked(self, name):
        self.info.check_field(name)
        return name

    def _aggregate_expression(self, key, name):
        column = getattr(self.info.model, name)
        if key == "_count":
            return func.count(column)
        return _AGGREGATE_FUNCTIONS[key](column)

    def _build_having(self, having, by):
        clauses = []
        for key, value in having.items():
            if key in ("AND", "OR", "NOT"):
                subs = [self._build_having(sub, by) for sub in (value if isinstance(value, list) else [value])]
                if key == "AND":
                    clauses.append(and_(true(), *subs))
                elif key == "OR":
                    clauses.append(or_(*subs) if subs else false())
                else:
                    clauses.extend(~sub for sub in subs)
                continue
            self.info.check_field(key)
            if isinstance(value, dict) and set(value) & set(AGGREGATES):
                for agg, condition in value.items():
                    if agg not in AGGREGATES:
                        raise QueryValidationError(f"Cannot mix `{agg}` with aggregates in having", model=self.info.name)
                    expression = self._aggregate_expression(agg, key)
                    clauses.append(_scalar_filter(self.info, key, expression, condition))
            else:
                if key not in by:
                    raise QueryValidationError(
                        f"Every field used in having filters must be in `by` or aggregated: `{key}`",
                        model=self.info.name,
                    )
                clauses.append(_scalar_filter(self.info, key, getattr(self.info.model, key), value))
        return and_(true(), *clauses)

    def _group_order(self, order_by, by):
        entries = order_by if isinstance(order_by, (list, tuple)) else [order_by] if order_by else []
        clauses = []
        for entry in entries:
            for key, spec in entry.items():
                if key in AGGREGATES:
                    for name, direction in spec.items():
                        self.info.check_field(name)
                        expression = self._aggregate_expression(key, name)
                        clauses.append(expression.desc() if direction == "desc" else expression.asc())
                    continue
                if key not in by:
                    raise QueryValidationError(f"Every field in order_by must be in `by`: `{key}`", model=self.info.name)
                column = getattr(self.info.model, key)
                clauses.append(column.desc() if spec == "desc" else column.asc())
        return clauses


def select_count(window):
    return select(func.count()).select_from(window)


def select_from_window(columns, window):
    return select(*columns).select_from(window)


def select_count_where(info, where):
    return select(func.count()).select_from(info.model).where(build_where(info, where))


def _shape_aggregates(mapping, shape):
    result = {}
    for key, name, label in shape:
        if name is None:
            result[key] = mapping[label]
        else:
            result.setdefault(key, {})[name] = mapping[label]
    return result
