# ═══════════════════════════════════════════════════════════════════════════════
# PART 7: DATA SOURCE REGISTRY
# Design: I1 (Systems Architect) + I3 (State Management)
# Implementation: I3 (State Management)
# ═══════════════════════════════════════════════════════════════════════════════

"""
I1: "One owner for every source. Execution order is explicit and stable, so
two runs with the same graph consume their streams in the same order."

I3: "A broken source costs its own value for one tick and nothing else. The
registry catches, records and moves on to the next source."
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from blockflow.core.data_source import DataSource, Number, SourceKind, SourceStatistics
from blockflow.core.discrete_source import DiscreteSource
from blockflow.core.errors import SourceGenerationError, ValidationError
from blockflow.core.scalar_source import ScalarSource

logger = logging.getLogger(__name__)

SOURCE_TYPES = {
    SourceKind.SCALAR: ScalarSource,
    SourceKind.DISCRETE: DiscreteSource,
}


def create_source(kind: Union[SourceKind, str], config: Optional[Dict[str, Any]] = None) -> DataSource:
    """Factory: build a concrete source for a kind name or SourceKind."""
    try:
        resolved = kind if isinstance(kind, SourceKind) else SourceKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown data source type: {kind!r}") from None
    return SOURCE_TYPES[resolved](config or {})


class DataSourceRegistry:
    """
    Owns every data source and executes them once per tick.

    Sources run in `execution_order` (insertion order unless changed).
    Mutating calls with an unknown id log a warning and do nothing.
    """

    def __init__(self):
        self.sources: Dict[str, DataSource] = {}
        self.execution_order: List[str] = []
        self.statistics: Dict[str, SourceStatistics] = {}
        self.last_errors: Dict[str, SourceGenerationError] = {}

    # ── Properties ──────────────────────────────────────────────────────────

    @property
    def source_count(self) -> int:
        return len(self.sources)

    @property
    def enabled_source_count(self) -> int:
        return sum(1 for s in self.sources.values() if s.is_enabled())

    def __contains__(self, source_id: str) -> bool:
        return source_id in self.sources

    def __len__(self) -> int:
        return len(self.sources)

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def add_source(self, kind: Union[SourceKind, str], config: Optional[Dict[str, Any]] = None) -> str:
        """Create a source and append it to the execution order. Returns its id."""
        source = create_source(kind, config)
        if source.id in self.sources:
            raise ValidationError(f"Duplicate data source id: {source.id}")

        self.sources[source.id] = source
        self.execution_order.append(source.id)
        self.statistics[source.id] = source.get_statistics()
        logger.info("Added %s source %s", source.kind.value, source.id)
        return source.id

    def remove_source(self, source_id: str) -> None:
        if source_id not in self.sources:
            logger.warning("Source not found: %s", source_id)
            return
        del self.sources[source_id]
        self.execution_order.remove(source_id)
        self.statistics.pop(source_id, None)
        self.last_errors.pop(source_id, None)
        logger.info("Removed source %s", source_id)

    def clear(self) -> None:
        self.sources.clear()
        self.execution_order.clear()
        self.statistics.clear()
        self.last_errors.clear()
        logger.info("Cleared all sources")

    # ── Lookup ──────────────────────────────────────────────────────────────

    def get_source(self, source_id: str) -> Optional[DataSource]:
        return self.sources.get(source_id)

    def get_all_sources(self) -> Dict[str, DataSource]:
        return dict(self.sources)

    def get_enabled_sources(self) -> List[DataSource]:
        """Enabled sources, in execution order."""
        return [self.sources[sid] for sid in self.execution_order
                if self.sources[sid].is_enabled()]

    # ── Mutation ────────────────────────────────────────────────────────────

    def update_source(self, source_id: str, params: Dict[str, Any]) -> bool:
        """
        Merge params into a source. Returns True if the source re-initialized.

        ValidationError from the source (e.g. an unknown pattern) propagates
        to the caller.
        """
        source = self.sources.get(source_id)
        if source is None:
            logger.warning("Source not found: %s", source_id)
            return False
        reinit = source.update_params(params)
        self.statistics[source_id] = source.get_statistics()
        logger.debug("Updated source %s (reinit=%s)", source_id, reinit)
        return reinit

    def set_source_enabled(self, source_id: str, enabled: bool) -> None:
        source = self.sources.get(source_id)
        if source is None:
            logger.warning("Source not found: %s", source_id)
            return
        source.set_enabled(enabled)

    def reset_source(self, source_id: str) -> None:
        source = self.sources.get(source_id)
        if source is None:
            logger.warning("Source not found: %s", source_id)
            return
        source.reset()
        self.statistics[source_id] = source.get_statistics()

    def reset_all(self) -> None:
        for source_id in self.execution_order:
            self.sources[source_id].reset()
        self._refresh_statistics()
        self.last_errors.clear()
        logger.info("Reset all sources")

    def set_execution_order(self, order: Iterable[str]) -> None:
        """
        Reorder execution. Unknown ids are rejected; sources missing from
        `order` keep their relative order and run after the listed ones.
        """
        order = list(order)
        unknown = [sid for sid in order if sid not in self.sources]
        if unknown:
            raise ValidationError(f"Unknown source ids in execution order: {unknown}")
        if len(set(order)) != len(order):
            raise ValidationError("Execution order contains duplicate ids")

        listed = set(order)
        self.execution_order = order + [sid for sid in self.execution_order if sid not in listed]

    # ── Execution ───────────────────────────────────────────────────────────

    def execute_all_sources(self) -> Dict[str, Number]:
        """
        Execute every enabled source once, in order.

        Returns {source_id: value} for the sources that succeeded. Failures
        are logged and kept in `last_errors` for this tick only.
        """
        values: Dict[str, Number] = {}
        self.last_errors = {}

        for source_id in self.execution_order:
            source = self.sources[source_id]
            if not source.is_enabled():
                continue
            try:
                values[source_id] = source.execute()
            except Exception as exc:
                error = SourceGenerationError(source_id, exc)
                self.last_errors[source_id] = error
                logger.error("Error executing source %s", source_id, exc_info=True)

        self._refresh_statistics()
        return values

    # ── Accessors ───────────────────────────────────────────────────────────

    def get_source_value(self, source_id: str) -> Optional[Number]:
        source = self.sources.get(source_id)
        return source.get_value() if source else None

    def get_source_history(self, source_id: str, length: Optional[int] = None) -> List[Number]:
        source = self.sources.get(source_id)
        return source.get_history(length) if source else []

    def get_source_statistics(self, source_id: str) -> Optional[SourceStatistics]:
        """Snapshot taken at the end of the most recent tick (or last edit)."""
        return self.statistics.get(source_id)

    def get_source_info(self, source_id: str) -> Optional[dict]:
        source = self.sources.get(source_id)
        return source.get_info() if source else None

    def get_source_config(self, source_id: str) -> Optional[dict]:
        source = self.sources.get(source_id)
        return source.get_config() if source else None

    def get_all_configs(self) -> List[dict]:
        return [self.sources[sid].get_config() for sid in self.execution_order]

    # ── Bulk load ───────────────────────────────────────────────────────────

    def load_from_configs(self, configs: Iterable[Dict[str, Any]], fresh_ids: bool = False) -> Dict[str, str]:
        """
        Replace all sources with ones rebuilt from persisted configs.

        Each source keeps its persisted seed. With fresh_ids, new ids are
        generated. Returns {persisted_id: live_id}. A config that cannot be
        rebuilt is logged and skipped.
        """
        self.clear()
        id_map: Dict[str, str] = {}

        for config in configs:
            old_id = config.get("id")
            config = dict(config)
            if fresh_ids:
                config.pop("id", None)
            try:
                new_id = self.add_source(config.get("type"), config)
            except ValidationError:
                logger.error("Failed to load source from config %s", old_id, exc_info=True)
                continue
            if old_id:
                id_map[old_id] = new_id

        logger.info("Loaded %d sources from configurations", len(id_map))
        return id_map

    # ── Internal ────────────────────────────────────────────────────────────

    def _refresh_statistics(self) -> None:
        self.statistics = {sid: s.get_statistics() for sid, s in self.sources.items()}
