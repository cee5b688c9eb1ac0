"""Generic repository over every `Entity` table.

One `EntityRepository` implementation serves users, projects, teams,
duties, labels, comments and the association tables; the concrete
repositories at the bottom of this module only name their model.

Queries are shaped with plain option objects instead of callables:

    QueryOptions(
        filters=[Filter("project_id", pid), AnyOf(Filter("status", s1), Filter("status", s2))],
        include=["sub_duties"],
        order_by=[OrderBy("due_date")],
    )

Soft-deleted rows are left out of every read unless the caller asks for
them with `include_deleted=True` or filters on `is_deleted` explicitly.
Reads return detached snapshots unless `tracking=True` is requested; a row
the session already tracks is handed back attached so the caller holding it
keeps its pending changes. Writes hand back detached snapshots of what was
stored.
Every write commits; database-level constraint failures surface as
`ConflictError` / `DeleteRestrictedError`.
"""

from __future__ import annotations

import json
import logging
import operator
import uuid
from dataclasses import dataclass, replace
from typing import Any, Generic, Iterable, List, Mapping, Optional, Sequence, Type, TypeVar, Union

from sqlalchemy import String, cast, delete, func, inspect as sa_inspect, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from . import models
from .errors import ConflictError, DeleteRestrictedError, NotFoundError
from .utils.clock import utcnow

logger = logging.getLogger(__name__)

EntityT = TypeVar("EntityT", bound=models.Entity)
IdLike = Union[uuid.UUID, str]

_OPERATORS = {
    "eq": operator.eq,
    "ne": operator.ne,
    "lt": operator.lt,
    "le": operator.le,
    "gt": operator.gt,
    "ge": operator.ge,
    "in": lambda column, value: column.in_(list(value)),
    "not_in": lambda column, value: column.not_in(list(value)),
    "like": lambda column, value: column.like(value),
    "ilike": lambda column, value: column.ilike(value),
    "is_null": lambda column, value: column.is_(None) if value else column.is_not(None),
}
_PATTERN_OPS = ("like", "ilike")


@dataclass(frozen=True)
class Filter:
    """Compare one column against a value (`op` is a key of `_OPERATORS`)."""
    field: str
    value: Any = None
    op: str = "eq"


class AnyOf:
    """OR-group of filters; top-level filters are combined with AND."""

    def __init__(self, *filters: Union[Filter, "AnyOf"]):
        self.filters = tuple(filters)

    def __repr__(self) -> str:
        return f"AnyOf{self.filters!r}"


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass
class QueryOptions:
    filters: Sequence[Union[Filter, AnyOf]] = ()
    include: Sequence[str] = ()
    order_by: Sequence[OrderBy] = ()
    include_deleted: bool = False
    tracking: bool = False

    @classmethod
    def where(cls, **equals: Any) -> "QueryOptions":
        """Shortcut for equality filters: `QueryOptions.where(email=...)`."""
        return cls(filters=[Filter(name, value) for name, value in equals.items()])


def _targets_deleted_flag(filters: Iterable[Union[Filter, AnyOf]]) -> bool:
    for item in filters:
        if isinstance(item, AnyOf):
            if _targets_deleted_flag(item.filters):
                return True
        elif item.field == "is_deleted":
            return True
    return False


class EntityRepository(Generic[EntityT]):
    """Async CRUD, filtering, pagination and soft/hard delete for `model`."""

    model: Type[EntityT]

    def __init__(self, session: AsyncSession):
        self.session = session

    # -- query composition -------------------------------------------------

    def _column(self, name: str):
        if name not in self.model.__table__.c:
            raise ValueError(f"{self.model.__name__} has no column {name!r}")
        return getattr(self.model, name)

    def _condition(self, item: Union[Filter, AnyOf]):
        if isinstance(item, AnyOf):
            return or_(*[self._condition(f) for f in item.filters])
        try:
            compare = _OPERATORS[item.op]
        except KeyError:
            raise ValueError(f"unsupported filter operator {item.op!r}") from None
        column = self._column(item.field)
        value = item.value
        if item.op in _PATTERN_OPS:
            if not isinstance(self.model.__table__.c[item.field].type, String):
                column = cast(column, String)
        elif item.field == "id" or item.field.endswith("_id"):
            value = _coerce_id_value(value)
        return compare(column, value)

    def _conditions(self, options: QueryOptions) -> list:
        conditions = [self._condition(f) for f in options.filters]
        if not options.include_deleted and not _targets_deleted_flag(options.filters):
            conditions.append(self.model.is_deleted == False)  # noqa: E712
        return conditions

    def _statement(self, options: QueryOptions):
        stmt = select(self.model)
        conditions = self._conditions(options)
        if conditions:
            stmt = stmt.where(*conditions)
        relationships = sa_inspect(self.model).relationships
        for name in options.include:
            if name not in relationships:
                raise ValueError(f"{self.model.__name__} has no relationship {name!r}")
            stmt = stmt.options(selectinload(getattr(self.model, name)))
        for order in options.order_by:
            column = self._column(order.field)
            stmt = stmt.order_by(column.desc() if order.descending else column.asc())
        # Identity-map instances may be stale after bulk UPDATE/DELETE.
        return stmt.execution_options(populate_existing=True)

    async def _fetch(self, stmt, tracking: bool) -> List[EntityT]:
        # rows the caller already tracks stay attached
        attached = set() if tracking else set(self.session.identity_map.keys())
        rows = list((await self.session.exec(stmt)).all())
        if not tracking:
            for row in rows:
                if sa_inspect(row).identity_key not in attached:
                    self.session.expunge(row)
        return rows

    # -- reads ---------------------------------------------------------------

    async def get_all(self, options: Optional[QueryOptions] = None) -> List[EntityT]:
        """Return every matching entity."""
        options = options or QueryOptions()
        return await self._fetch(self._statement(options), options.tracking)

    async def get_all_paginated(self, options: Optional[QueryOptions] = None,
                                page: int = 1, page_size: Optional[int] = None) -> List[EntityT]:
        """Return one 1-based page of matches; past the last page yields `[]`.

        `page_size=None` means unbounded, so only page 1 has rows. Without
        an explicit ordering, rows are ordered by creation time then id to
        keep windows stable.
        """
        if page < 1:
            raise ValueError("page must be >= 1")
        if page_size is not None and page_size < 1:
            raise ValueError("page_size must be >= 1")
        options = options or QueryOptions()
        if not options.order_by:
            options = replace(options, order_by=(OrderBy("created_at"), OrderBy("id")))
        stmt = self._statement(options)
        if page_size is None:
            if page > 1:
                return []
        else:
            stmt = stmt.offset((page - 1) * page_size).limit(page_size)
        return await self._fetch(stmt, options.tracking)

    async def get(self, options: QueryOptions) -> Optional[EntityT]:
        """Return the first match or `None`."""
        rows = await self._fetch(self._statement(options).limit(1), options.tracking)
        return rows[0] if rows else None

    async def get_by_id(self, entity_id: IdLike, include: Sequence[str] = (),
                        include_deleted: bool = False, tracking: bool = False) -> Optional[EntityT]:
        options = QueryOptions(filters=[Filter("id", _coerce_id(entity_id))], include=include,
                               include_deleted=include_deleted, tracking=tracking)
        return await self.get(options)

    def find(self, options: Optional[QueryOptions] = None) -> "QueryHandle[EntityT]":
        """Return an unmaterialized query for further chaining."""
        options = options or QueryOptions()
        return QueryHandle(self, self._statement(options), options.tracking)

    async def count(self, options: Optional[QueryOptions] = None) -> int:
        """Count matching entities (soft-deleted excluded by default)."""
        stmt = select(func.count()).select_from(self.model)
        conditions = self._conditions(options or QueryOptions())
        if conditions:
            stmt = stmt.where(*conditions)
        return int((await self.session.exec(stmt)).one())

    # -- writes --------------------------------------------------------------

    async def _commit(self, error_cls: Type[ConflictError] = ConflictError, action: str = "write") -> None:
        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise error_cls(f"{self.model.__name__} {action} rejected by the database: {exc.orig}") from exc

    def _stamp_created(self, entity: EntityT, actor_id: Optional[uuid.UUID]) -> None:
        entity.created_at = entity.created_at or utcnow()
        if actor_id is not None:
            entity.created_user_id = actor_id
        entity.is_deleted = False
        entity.deleted_at = None
        entity.deleted_user_id = None

    async def add(self, entity: EntityT, actor_id: Optional[uuid.UUID] = None) -> EntityT:
        """Persist a new entity and return it with generated fields populated."""
        self._stamp_created(entity, actor_id)
        self.session.add(entity)
        await self._commit(action="insert")
        await self.session.refresh(entity)
        self.session.expunge(entity)
        return entity

    async def add_range(self, entities: Iterable[EntityT], actor_id: Optional[uuid.UUID] = None) -> List[EntityT]:
        entities = list(entities)
        for entity in entities:
            self._stamp_created(entity, actor_id)
        self.session.add_all(entities)
        await self._commit(action="insert")
        for entity in entities:
            await self.session.refresh(entity)
            self.session.expunge(entity)
        return entities

    async def update(self, entity: EntityT, actor_id: Optional[uuid.UUID] = None) -> EntityT:
        """Persist changes to an existing, non-deleted entity.

        Detached snapshots are merged onto the stored row. Only the
        `updated_*` audit fields are stamped, and `updated_user_id` only
        when an actor is given.
        """
        stmt = self._statement(QueryOptions(filters=[Filter("id", entity.id)])).limit(1)
        current = (await self.session.exec(stmt)).first()
        if current is None:
            raise NotFoundError(f"{self.model.__name__} {entity.id} does not exist")
        if current is not entity:
            entity = await self.session.merge(entity)
        entity.updated_at = utcnow()
        if actor_id is not None:
            entity.updated_user_id = actor_id
        await self._commit(action="update")
        await self.session.refresh(entity)
        self.session.expunge(entity)
        return entity

    async def compare_and_set(self, entity_id: IdLike, expected: Mapping[str, Any],
                              changes: Mapping[str, Any], actor_id: Optional[uuid.UUID] = None) -> bool:
        """Apply `changes` only if the row still holds `expected` values.

        This is one UPDATE statement, so concurrent callers racing on the
        same expected state cannot both win. Returns whether a row changed.
        """
        conditions = [self.model.id == _coerce_id(entity_id), self.model.is_deleted == False]  # noqa: E712
        conditions.extend(self._column(name) == value for name, value in expected.items())
        for name in changes:
            self._column(name)
        values = dict(changes, updated_at=utcnow())
        if actor_id is not None:
            values["updated_user_id"] = actor_id
        stmt = update(self.model).where(*conditions).values(**values)
        result = await self.session.exec(stmt.execution_options(synchronize_session=False))
        await self._commit(action="update")
        return result.rowcount == 1

    async def soft_delete(self, target: Union[EntityT, IdLike], actor_id: Optional[uuid.UUID] = None) -> None:
        """Flag one entity as deleted; raise `NotFoundError` if none matched."""
        entity_id = _id_of(target)
        if not await self._soft_delete_ids([entity_id], actor_id):
            raise NotFoundError(f"{self.model.__name__} {entity_id} does not exist")

    async def soft_delete_matching(self, targets: Iterable[Union[EntityT, IdLike]],
                                   actor_id: Optional[uuid.UUID] = None) -> int:
        """Flag every given entity/id as deleted and return how many changed."""
        ids = [_id_of(t) for t in targets]
        if not ids:
            return 0
        return await self._soft_delete_ids(ids, actor_id)

    async def _soft_delete_ids(self, ids: List[uuid.UUID], actor_id: Optional[uuid.UUID]) -> int:
        stmt = (
            update(self.model)
            .where(self.model.id.in_(ids), self.model.is_deleted == False)  # noqa: E712
            .values(is_deleted=True, deleted_at=utcnow(), deleted_user_id=actor_id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.exec(stmt)
        await self._commit(action="soft delete")
        return result.rowcount

    async def hard_delete(self, target: Union[EntityT, IdLike]) -> None:
        """Physically remove one row; cascade/restrict rules come from the schema."""
        entity_id = _id_of(target)
        if not await self._hard_delete_ids([entity_id]):
            raise NotFoundError(f"{self.model.__name__} {entity_id} does not exist")

    async def hard_delete_matching(self, targets: Iterable[Union[EntityT, IdLike]]) -> int:
        ids = [_id_of(t) for t in targets]
        if not ids:
            return 0
        return await self._hard_delete_ids(ids)

    async def _hard_delete_ids(self, ids: List[uuid.UUID]) -> int:
        try:
            stmt = delete(self.model).where(self.model.id.in_(ids)).execution_options(synchronize_session=False)
            result = await self.session.exec(stmt)
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            logger.info(
                "hard_delete_restricted %s",
                json.dumps({"entity": self.model.__name__, "ids": [str(i) for i in ids]}, ensure_ascii=True),
            )
            raise DeleteRestrictedError(
                f"{self.model.__name__} is still referenced by dependent rows"
            ) from exc
        return result.rowcount


class QueryHandle(Generic[EntityT]):
    """A composable, not yet executed query produced by `find`.

    Refinement methods return new handles; `all`, `first` and `count`
    execute the query.
    """

    def __init__(self, repository: EntityRepository[EntityT], statement, tracking: bool = False):
        self._repository = repository
        self._statement = statement
        self._tracking = tracking

    @property
    def statement(self):
        return self._statement

    def _derive(self, statement) -> "QueryHandle[EntityT]":
        return QueryHandle(self._repository, statement, self._tracking)

    def where(self, *filters: Union[Filter, AnyOf]) -> "QueryHandle[EntityT]":
        return self._derive(self._statement.where(*[self._repository._condition(f) for f in filters]))

    def order_by(self, *orders: OrderBy) -> "QueryHandle[EntityT]":
        stmt = self._statement
        for order in orders:
            column = self._repository._column(order.field)
            stmt = stmt.order_by(column.desc() if order.descending else column.asc())
        return self._derive(stmt)

    def limit(self, count: int) -> "QueryHandle[EntityT]":
        return self._derive(self._statement.limit(count))

    def offset(self, count: int) -> "QueryHandle[EntityT]":
        return self._derive(self._statement.offset(count))

    async def all(self) -> List[EntityT]:
        return await self._repository._fetch(self._statement, self._tracking)

    async def first(self) -> Optional[EntityT]:
        rows = await self._repository._fetch(self._statement.limit(1), self._tracking)
        return rows[0] if rows else None

    async def count(self) -> int:
        stmt = select(func.count()).select_from(self._statement.subquery())
        return int((await self._repository.session.exec(stmt)).one())


def _coerce_id(value: IdLike) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _coerce_id_value(value: Any) -> Any:
    """Turn string ids (alone or inside an `in` list) into `UUID`s."""
    if isinstance(value, str):
        return _coerce_id(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_coerce_id(v) if isinstance(v, str) else v for v in value]
    return value


def _id_of(target: Union[models.Entity, IdLike]) -> uuid.UUID:
    if isinstance(target, models.Entity):
        return target.id
    return _coerce_id(target)


class UserRepository(EntityRepository[models.User]):
    """CRUD operations for `User` objects."""
    model = models.User


class ProjectRepository(EntityRepository[models.Project]):
    """CRUD operations for `Project` objects."""
    model = models.Project


class TeamRepository(EntityRepository[models.Team]):
    """CRUD operations for `Team` objects."""
    model = models.Team


class DutyRepository(EntityRepository[models.Duty]):
    """CRUD operations for `Duty` objects."""
    model = models.Duty


class LabelRepository(EntityRepository[models.Label]):
    """CRUD operations for `Label` objects."""
    model = models.Label


class CommentRepository(EntityRepository[models.Comment]):
    """CRUD operations for `Comment` objects."""
    model = models.Comment


class UserDutyRepository(EntityRepository[models.UserDuty]):
    """CRUD operations for duty assignments."""
    model = models.UserDuty


class UserTeamRepository(EntityRepository[models.UserTeam]):
    """CRUD operations for team memberships."""
    model = models.UserTeam


class TeamProjectRepository(EntityRepository[models.TeamProject]):
    """CRUD operations for team/project access grants."""
    model = models.TeamProject
