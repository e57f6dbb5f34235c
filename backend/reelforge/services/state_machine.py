"""
Status state machines for every entity the workers drive.

A machine lists, per target state, the states it may be entered from.
All writes go through `transition()`, a single conditional UPDATE:

    UPDATE <table> SET <status>=:to, ... WHERE id=:id AND <status> IN (:from)

so a job never overwrites a state another job (or an operator) has already
moved past. Terminal states have no outgoing worker edges; operator actions
use their own explicit edges (`operator=True`).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.models import (
    AnalysisStatus,
    CollectedVideo,
    ExtractionStatus,
    Project,
    ProjectStatus,
    PublishLog,
    PublishStatus,
    Render,
    RenderStatus,
    Template,
    VideoStatus,
)

logger = logging.getLogger(__name__)


class InvalidTransition(ValueError):
    pass


@dataclass(frozen=True)
class StateMachine:
    name: str
    model: type
    column: str
    # target -> allowed sources (None stands for a NULL column)
    edges: dict[str, frozenset[str | None]]
    terminal: frozenset[str]
    # edges only an explicit operator/API action may take
    operator_edges: dict[str, frozenset[str | None]] = field(default_factory=dict)

    def sources_for(self, to: str, *, operator: bool = False) -> frozenset[str | None]:
        table = self.operator_edges if operator else self.edges
        if to not in table:
            raise InvalidTransition(f"{self.name}: no transition into {to}")
        return table[to]

    def can_transition(self, from_state: str | None, to: str, *, operator: bool = False) -> bool:
        table = self.operator_edges if operator else self.edges
        return from_state in table.get(to, frozenset())

    def is_terminal(self, state: str | None) -> bool:
        return state in self.terminal


def _s(*states: Any) -> frozenset[str | None]:
    return frozenset(s.value if hasattr(s, "value") else s for s in states)


VIDEO = StateMachine(
    name="collected_video",
    model=CollectedVideo,
    column="status",
    edges={
        # FETCHING -> FETCHING is the queue retry re-entering the job
        VideoStatus.fetching.value: _s(VideoStatus.pending, VideoStatus.fetching),
        VideoStatus.ready.value: _s(VideoStatus.fetching),
        VideoStatus.failed.value: _s(VideoStatus.pending, VideoStatus.fetching),
    },
    terminal=_s(VideoStatus.ready, VideoStatus.failed),
)

ANALYSIS = StateMachine(
    name="video_analysis",
    model=CollectedVideo,
    column="analysis_status",
    edges={
        AnalysisStatus.analyzing.value: _s(AnalysisStatus.unanalyzed, AnalysisStatus.analyzing),
        AnalysisStatus.analyzed.value: _s(AnalysisStatus.analyzing),
        AnalysisStatus.failed.value: _s(AnalysisStatus.analyzing),
    },
    terminal=_s(AnalysisStatus.analyzed, AnalysisStatus.failed),
    operator_edges={
        # re-analysis requested through the API
        AnalysisStatus.analyzing.value: _s(
            AnalysisStatus.unanalyzed, AnalysisStatus.analyzed, AnalysisStatus.failed
        ),
    },
)

EXTRACTION = StateMachine(
    name="template_extraction",
    model=Template,
    column="extraction_status",
    edges={
        ExtractionStatus.extracting.value: _s(None, ExtractionStatus.extracting),
        ExtractionStatus.completed.value: _s(ExtractionStatus.extracting),
        ExtractionStatus.failed.value: _s(None, ExtractionStatus.extracting),
    },
    terminal=_s(ExtractionStatus.completed, ExtractionStatus.failed, ExtractionStatus.rejected),
    operator_edges={
        ExtractionStatus.rejected.value: _s(ExtractionStatus.completed),
    },
)

RENDER = StateMachine(
    name="render",
    model=Render,
    column="status",
    edges={
        RenderStatus.processing.value: _s(RenderStatus.pending, RenderStatus.processing),
        RenderStatus.done.value: _s(RenderStatus.processing),
        RenderStatus.failed.value: _s(RenderStatus.pending, RenderStatus.processing),
    },
    terminal=_s(RenderStatus.done, RenderStatus.failed),
)

PUBLISH = StateMachine(
    name="publish_log",
    model=PublishLog,
    column="status",
    edges={
        PublishStatus.uploading.value: _s(PublishStatus.pending, PublishStatus.uploading),
        PublishStatus.published.value: _s(PublishStatus.uploading),
        PublishStatus.failed.value: _s(PublishStatus.pending, PublishStatus.uploading),
    },
    terminal=_s(PublishStatus.published, PublishStatus.failed),
)

PROJECT = StateMachine(
    name="project",
    model=Project,
    column="status",
    edges={
        ProjectStatus.done.value: _s(ProjectStatus.ready, ProjectStatus.done),
    },
    terminal=frozenset(),
    operator_edges={
        ProjectStatus.ready.value: _s(ProjectStatus.draft, ProjectStatus.done),
    },
)


def _source_clause(column: sa.ColumnElement, sources: Iterable[str | None]) -> sa.ColumnElement:
    values = [s for s in sources if s is not None]
    clauses = []
    if values:
        clauses.append(column.in_(values))
    if None in sources:
        clauses.append(column.is_(None))
    return sa.or_(*clauses)


async def transition(
    session: AsyncSession,
    machine: StateMachine,
    entity_id: str,
    *,
    to: str,
    allowed_from: Iterable[str | None] | None = None,
    operator: bool = False,
    where: Iterable[sa.ColumnElement] = (),
    commit: bool = True,
    **fields: Any,
) -> bool:
    """Move one row to `to` if its current state allows it.

    `allowed_from` narrows (never widens) the machine's own edge set.
    Extra `where` clauses are ANDed into the same statement.
    Returns True when exactly one row changed.
    """
    sources = machine.sources_for(to, operator=operator)
    if allowed_from is not None:
        requested = frozenset(allowed_from)
        widened = requested - sources
        if widened:
            raise InvalidTransition(
                f"{machine.name}: {sorted(map(str, widened))} -> {to} is not a valid transition"
            )
        sources = requested

    model = machine.model
    column = getattr(model, machine.column)
    stmt = (
        sa.update(model)
        .where(model.id == entity_id, _source_clause(column, sources), *where)
        .values({machine.column: to, **fields})
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if commit:
        await session.commit()

    changed = result.rowcount == 1
    if not changed:
        logger.info(f"[state] {machine.name} {entity_id}: transition to {to} skipped (state moved on)")
    return changed
