"""Declared stage sequence shared by every executor."""

from __future__ import annotations

from typing import Iterator, Optional, Sequence, Tuple

from pydantic import BaseModel

from .constants import (
    ENRICHMENT,
    EXTRACTION,
    NORMALIZATION,
    PERSISTENCE,
    STATUS_UPDATE,
    SYNC,
    UPLOAD_SLOT,
)


class StageDefinition(BaseModel):
    """One step of the pipeline.

    ``inputs`` names the metadata slots the stage reads; ``upload`` is the
    uploaded document, any other name is the output of that stage.
    """

    name: str
    order: int
    inputs: Tuple[str, ...] = ()
    queue_name: Optional[str] = None

    @property
    def queue(self) -> str:
        return self.queue_name or self.name


class StageSequence:
    """Ordered, immutable collection of stage definitions."""

    def __init__(self, stages: Sequence[StageDefinition]) -> None:
        if not stages:
            raise ValueError("A stage sequence needs at least one stage")
        ordered = sorted(stages, key=lambda s: s.order)
        if [s.order for s in ordered] != list(range(1, len(ordered) + 1)):
            raise ValueError("Stage orders must be 1..N without gaps")
        names = [s.name for s in ordered]
        if len(set(names)) != len(names):
            raise ValueError("Stage names must be unique")
        self._stages = tuple(ordered)
        self._by_name = {s.name: s for s in ordered}

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[StageDefinition]:
        return iter(self._stages)

    def __contains__(self, stage_name: object) -> bool:
        return stage_name in self._by_name

    @property
    def names(self) -> list[str]:
        return [s.name for s in self._stages]

    def first(self) -> StageDefinition:
        return self._stages[0]

    def last(self) -> StageDefinition:
        return self._stages[-1]

    def get(self, stage_name: str) -> StageDefinition:
        try:
            return self._by_name[stage_name]
        except KeyError:
            raise KeyError(f"Unknown stage: {stage_name}") from None

    def next_after(self, stage_name: str) -> Optional[StageDefinition]:
        """Stage following ``stage_name`` or ``None`` if it is the last one."""
        order = self.get(stage_name).order
        if order >= len(self._stages):
            return None
        return self._stages[order]


DEFAULT_STAGES = StageSequence(
    [
        StageDefinition(name=EXTRACTION, order=1, inputs=(UPLOAD_SLOT,)),
        StageDefinition(name=NORMALIZATION, order=2, inputs=(EXTRACTION,)),
        StageDefinition(name=PERSISTENCE, order=3, inputs=(NORMALIZATION,)),
        StageDefinition(name=ENRICHMENT, order=4, inputs=(NORMALIZATION, PERSISTENCE)),
        StageDefinition(name=SYNC, order=5, inputs=(PERSISTENCE,)),
        StageDefinition(name=STATUS_UPDATE, order=6, inputs=(EXTRACTION, PERSISTENCE)),
    ]
)
