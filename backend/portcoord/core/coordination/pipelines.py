"""
Pipeline Service - Execution plans, memberships and dependency edges.

Owns every write the Dependency Resolver reads: plan and membership rows,
the global edge set, and the status transitions of both.
"""

import enum
from collections import defaultdict
from typing import Iterable, Optional, TypeVar

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from portcoord.core.coordination.resolver import find_dependency_path
from portcoord.core.exceptions import (
    ConflictError,
    DependencyCycleError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from portcoord.core.models import (
    Pipeline,
    PipelinePort,
    PipelineStatus,
    PortDependency,
    PortStatus,
    utcnow,
)
from portcoord.core.schemas import Progress

logger = structlog.get_logger(__name__)

E = TypeVar("E", bound=enum.Enum)


def parse_status(enum_cls: type[E], value) -> E:
    """Coerce a raw status value, rejecting anything outside the enum."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        valid = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"Invalid status '{value}'. Must be one of: {valid}",
            status=value,
            valid=[m.value for m in enum_cls],
        ) from None


class PipelineService:
    """
    CRUD and transitions for execution plans.

    Port status never moves backward:
        pending -> running -> complete | failed | skipped | cancelled

    Plan status is tracked independently of its ports and cannot leave a
    terminal state.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==========================================================================
    # Plans
    # ==========================================================================

    async def create(self, pipeline_id: str, name: str, session_id: Optional[str] = None) -> Pipeline:
        pipeline_id = (pipeline_id or "").strip()
        if not pipeline_id:
            raise ValidationError("Pipeline id must not be empty")

        if await self.db.get(Pipeline, pipeline_id) is not None:
            raise ConflictError(f"Pipeline '{pipeline_id}' already exists", id=pipeline_id)

        pipeline = Pipeline(
            id=pipeline_id,
            name=name,
            session_id=session_id,
            status=PipelineStatus.PENDING,
        )
        self.db.add(pipeline)
        await self.db.commit()
        await self.db.refresh(pipeline)

        logger.info("Pipeline created", pipeline_id=pipeline_id, session_id=session_id)
        return pipeline

    async def get(self, pipeline_id: str) -> Pipeline:
        pipeline = await self.db.get(Pipeline, pipeline_id)
        if pipeline is None:
            raise NotFoundError("Pipeline", pipeline_id)
        return pipeline

    async def list_pipelines(
        self,
        status: Optional[PipelineStatus] = None,
        limit: int = 50,
    ) -> list[Pipeline]:
        """Plans, newest first."""
        query = select(Pipeline)
        if status is not None:
            query = query.where(Pipeline.status == parse_status(PipelineStatus, status))
        query = query.order_by(Pipeline.created_at.desc(), Pipeline.id).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def delete(self, pipeline_id: str) -> None:
        """Delete a plan and its memberships. Dependency edges are global and stay."""
        pipeline = await self.get(pipeline_id)

        await self.db.execute(
            delete(PipelinePort)
            .where(PipelinePort.pipeline_id == pipeline_id)
            .execution_options(synchronize_session="fetch")
        )
        await self.db.delete(pipeline)
        await self.db.commit()

        logger.info("Pipeline deleted", pipeline_id=pipeline_id)

    async def update_status(self, pipeline_id: str, status) -> Pipeline:
        """
        Move a plan to a new status.

        Raises:
            ValidationError: Unknown status value
            InvalidTransitionError: The plan is already terminal
        """
        new_status = parse_status(PipelineStatus, status)
        pipeline = await self.get(pipeline_id)
        current = pipeline.status

        if new_status == current:
            return pipeline
        if current.is_terminal or (
            current == PipelineStatus.RUNNING and new_status == PipelineStatus.PENDING
        ):
            raise InvalidTransitionError("Pipeline", pipeline_id, current.value, new_status.value)

        now = utcnow()
        pipeline.status = new_status
        if new_status == PipelineStatus.RUNNING and pipeline.started_at is None:
            pipeline.started_at = now
        if new_status.is_terminal:
            pipeline.completed_at = now

        await self.db.commit()
        await self.db.refresh(pipeline)

        logger.info(
            "Pipeline status changed",
            pipeline_id=pipeline_id,
            from_status=current.value,
            to_status=new_status.value,
        )
        return pipeline

    # ==========================================================================
    # Memberships
    # ==========================================================================

    async def add_port(
        self,
        pipeline_id: str,
        port_id: str,
        group_order: int = 0,
        depends_on: Iterable[str] = (),
    ) -> PipelinePort:
        """
        Add a port to a plan as ``pending`` and register its dependency edges.

        Raises:
            NotFoundError: Unknown pipeline
            ConflictError: The port is already a member
            ValidationError: Bad edge (empty id, self-edge, cycle)
        """
        port_id = (port_id or "").strip()
        if not port_id:
            raise ValidationError("Port id must not be empty")
        if group_order < 0:
            raise ValidationError("Group order must not be negative", group_order=group_order)

        await self.get(pipeline_id)
        if await self.db.get(PipelinePort, (pipeline_id, port_id)) is not None:
            raise ConflictError(
                f"Port '{port_id}' is already in pipeline '{pipeline_id}'",
                pipeline_id=pipeline_id,
                port_id=port_id,
            )

        # Validate every edge before writing anything
        edges = await self._edges()
        new_edges = []
        for dep in depends_on:
            dep = self._check_edge(port_id, dep)
            self._check_cycle(edges, port_id, dep)
            if dep not in edges[port_id]:
                edges[port_id].add(dep)
                new_edges.append(dep)

        member = PipelinePort(
            pipeline_id=pipeline_id,
            port_id=port_id,
            group_order=group_order,
            status=PortStatus.PENDING,
        )
        self.db.add(member)
        for dep in new_edges:
            self.db.add(PortDependency(port_id=port_id, depends_on=dep))

        await self.db.commit()
        await self.db.refresh(member)

        logger.info(
            "Port added to pipeline",
            pipeline_id=pipeline_id,
            port_id=port_id,
            group_order=group_order,
            depends_on=new_edges,
        )
        return member

    async def remove_port(self, pipeline_id: str, port_id: str) -> None:
        member = await self.get_port(pipeline_id, port_id)
        await self.db.delete(member)
        await self.db.commit()

        logger.info("Port removed from pipeline", pipeline_id=pipeline_id, port_id=port_id)

    async def get_port(self, pipeline_id: str, port_id: str) -> PipelinePort:
        await self.get(pipeline_id)
        member = await self.db.get(PipelinePort, (pipeline_id, port_id))
        if member is None:
            raise NotFoundError("Port", f"{pipeline_id}/{port_id}")
        return member

    async def ports(self, pipeline_id: str) -> list[PipelinePort]:
        """Memberships in wave order."""
        await self.get(pipeline_id)
        result = await self.db.execute(
            select(PipelinePort)
            .where(PipelinePort.pipeline_id == pipeline_id)
            .order_by(PipelinePort.group_order, PipelinePort.port_id)
        )
        return list(result.scalars().all())

    async def groups(self, pipeline_id: str) -> dict[int, list[str]]:
        """Port ids keyed by group_order."""
        groups: dict[int, list[str]] = defaultdict(list)
        for member in await self.ports(pipeline_id):
            groups[member.group_order].append(member.port_id)
        return dict(groups)

    async def update_port_status(self, pipeline_id: str, port_id: str, status) -> PipelinePort:
        """
        Move a membership forward. Setting the current status is a no-op.

        The write is a compare-and-set on the observed status, so two
        concurrent updates cannot both move the same membership.

        Raises:
            ValidationError: Unknown status value
            InvalidTransitionError: Backward move, or leaving a terminal status
        """
        new_status = parse_status(PortStatus, status)
        member = await self.get_port(pipeline_id, port_id)
        current = member.status

        if new_status == current:
            return member
        if new_status.rank <= current.rank:
            raise InvalidTransitionError(
                "Port", f"{pipeline_id}/{port_id}", current.value, new_status.value
            )

        result = await self.db.execute(
            update(PipelinePort)
            .where(PipelinePort.pipeline_id == pipeline_id)
            .where(PipelinePort.port_id == port_id)
            .where(PipelinePort.status == current)
            .values(status=new_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(member)

        if (result.rowcount or 0) != 1:
            # Someone else moved it first; re-judge against what they wrote
            if member.status == new_status:
                return member
            raise InvalidTransitionError(
                "Port", f"{pipeline_id}/{port_id}", member.status.value, new_status.value
            )

        logger.info(
            "Port status changed",
            pipeline_id=pipeline_id,
            port_id=port_id,
            from_status=current.value,
            to_status=new_status.value,
        )
        return member

    async def start_port(self, pipeline_id: str, port_id: str) -> PipelinePort:
        """
        Move a membership from pending to running. Exactly one caller wins;
        a port that is already running or finished is refused.

        Raises:
            InvalidTransitionError: The port is not pending
        """
        member = await self.get_port(pipeline_id, port_id)
        if member.status != PortStatus.PENDING:
            raise InvalidTransitionError(
                "Port", f"{pipeline_id}/{port_id}", member.status.value, PortStatus.RUNNING.value
            )

        result = await self.db.execute(
            update(PipelinePort)
            .where(PipelinePort.pipeline_id == pipeline_id)
            .where(PipelinePort.port_id == port_id)
            .where(PipelinePort.status == PortStatus.PENDING)
            .values(status=PortStatus.RUNNING, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(member)

        if (result.rowcount or 0) != 1:
            raise InvalidTransitionError(
                "Port", f"{pipeline_id}/{port_id}", member.status.value, PortStatus.RUNNING.value
            )

        logger.info("Port started", pipeline_id=pipeline_id, port_id=port_id)
        return member

    async def progress(self, pipeline_id: str) -> Progress:
        await self.get(pipeline_id)
        result = await self.db.execute(
            select(PipelinePort.status, func.count())
            .where(PipelinePort.pipeline_id == pipeline_id)
            .group_by(PipelinePort.status)
        )
        counts = {status: count for status, count in result.all()}

        return Progress(
            pipeline_id=pipeline_id,
            completed=counts.get(PortStatus.COMPLETE, 0),
            total=sum(counts.values()),
        )

    async def is_complete(self, pipeline_id: str) -> bool:
        """True once every member is complete. An empty plan is not complete."""
        progress = await self.progress(pipeline_id)
        return progress.total > 0 and progress.completed == progress.total

    async def has_failure(self, pipeline_id: str) -> bool:
        await self.get(pipeline_id)
        result = await self.db.execute(
            select(func.count())
            .select_from(PipelinePort)
            .where(PipelinePort.pipeline_id == pipeline_id)
            .where(PipelinePort.status == PortStatus.FAILED)
        )
        return (result.scalar() or 0) > 0

    # ==========================================================================
    # Dependency edges
    # ==========================================================================

    async def add_dependency(self, port_id: str, depends_on: str) -> PortDependency:
        """
        Record that ``port_id`` runs only after ``depends_on``.

        Edges are global. Adding an existing edge is a no-op.

        Raises:
            ValidationError: Empty id or self-edge
            DependencyCycleError: The edge would close a cycle
        """
        port_id = (port_id or "").strip()
        if not port_id:
            raise ValidationError("Port id must not be empty")
        depends_on = self._check_edge(port_id, depends_on)

        existing = await self.db.get(PortDependency, (port_id, depends_on))
        if existing is not None:
            return existing

        self._check_cycle(await self._edges(), port_id, depends_on)

        edge = PortDependency(port_id=port_id, depends_on=depends_on)
        self.db.add(edge)
        await self.db.commit()
        await self.db.refresh(edge)

        logger.info("Dependency added", port_id=port_id, depends_on=depends_on)
        return edge

    async def remove_dependency(self, port_id: str, depends_on: str) -> bool:
        result = await self.db.execute(
            delete(PortDependency)
            .where(PortDependency.port_id == port_id)
            .where(PortDependency.depends_on == depends_on)
        )
        await self.db.commit()

        removed = (result.rowcount or 0) > 0
        if removed:
            logger.info("Dependency removed", port_id=port_id, depends_on=depends_on)
        return removed

    async def dependencies(self, port_id: str) -> list[str]:
        result = await self.db.execute(
            select(PortDependency.depends_on)
            .where(PortDependency.port_id == port_id)
            .order_by(PortDependency.depends_on)
        )
        return list(result.scalars().all())

    @staticmethod
    def _check_edge(port_id: str, depends_on: str) -> str:
        depends_on = (depends_on or "").strip()
        if not depends_on:
            raise ValidationError("Dependency id must not be empty", port_id=port_id)
        if depends_on == port_id:
            raise ValidationError(f"Port '{port_id}' cannot depend on itself", port_id=port_id)
        return depends_on

    @staticmethod
    def _check_cycle(edges: dict[str, set[str]], port_id: str, depends_on: str) -> None:
        # port -> dep closes a cycle iff dep already reaches port
        path = find_dependency_path(edges, depends_on, port_id)
        if path is not None:
            cycle = [port_id] + path
            logger.info("Dependency cycle rejected", port_id=port_id, depends_on=depends_on, cycle=cycle)
            raise DependencyCycleError(port_id, depends_on, cycle)

    async def _edges(self) -> dict[str, set[str]]:
        result = await self.db.execute(select(PortDependency.port_id, PortDependency.depends_on))
        edges: dict[str, set[str]] = defaultdict(set)
        for port_id, depends_on in result.all():
            edges[port_id].add(depends_on)
        return edges
