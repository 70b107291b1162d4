"""
geoworkshop — Tables
=====================
Small verb-style wrappers around pandas / geopandas frames.

Two explicit variants replace implicit dispatch on "is this spatial?":

* :class:`SpatialTable` wraps a ``GeoDataFrame``.  The geometry column is
  sticky (``select`` always keeps it) and ``summarise`` unions geometries
  per group.
* :class:`PlainTable` wraps a ``DataFrame``.

Every verb returns a new table; the wrapped frame is never modified.

Usage::

    table = gages.to_table()
    busiest = (
        table.filter(lambda df: df["drainage_km2"] > 100)
             .mutate(area_mi2=lambda df: df["drainage_km2"] * 0.386)
             .arrange("area_mi2", descending=True)
             .select("site_no", "area_mi2")
    )
"""

from __future__ import annotations

import logging
from abc import ABC
from typing import Any, Callable, Hashable, Union

import geopandas as gpd
import pandas as pd
import shapely

from geoworkshop.models import FeatureCollection
from geoworkshop.validators import Validators

logger = logging.getLogger("geoworkshop.tables")

RowFilter = Union[str, Callable[[pd.DataFrame], Any]]
Aggregation = tuple[str, Union[str, Callable]]


class Table(ABC):
    """Common verbs for both table variants."""

    def __init__(self, frame: pd.DataFrame) -> None:
        self._frame = frame

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def columns(self) -> list[str]:
        return [str(c) for c in self._frame.columns]

    def __len__(self) -> int:
        return len(self._frame)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(rows={len(self)}, columns={self.columns})"

    def to_pandas(self) -> pd.DataFrame:
        """Return a copy of the wrapped frame."""
        return self._frame.copy()

    # ------------------------------------------------------------------
    # Verbs
    # ------------------------------------------------------------------

    def select(self, *columns: str) -> "Table":
        self._require(columns, "select")
        return self._new(self._frame[list(columns)])

    def filter(self, condition: RowFilter) -> "Table":
        """Keep rows where *condition* holds.

        Args:
            condition: A ``DataFrame.query`` expression, or a callable
                       taking the frame and returning a boolean mask.
        """
        if isinstance(condition, str):
            kept = self._frame.query(condition)
        else:
            kept = self._frame[condition(self._frame)]
        return self._new(kept)

    def mutate(self, **columns: Any) -> "Table":
        """Add or replace columns.

        Values may be scalars, sequences, or callables receiving the frame.
        """
        return self._new(self._frame.assign(**columns))

    def arrange(self, *columns: str, descending: bool = False) -> "Table":
        self._require(columns, "arrange")
        return self._new(
            self._frame.sort_values(list(columns), ascending=not descending, kind="stable")
        )

    def summarise(self, by: str | list[str] | None = None, **aggregations: Aggregation) -> "Table":
        """Aggregate rows, optionally per group.

        Args:
            by: Grouping column(s), or ``None`` for a single summary row.
            **aggregations: ``name=(column, func)`` pairs where *func* is a
                pandas aggregation name (``"mean"``, ``"sum"``…) or a callable.
        """
        keys = self._keys(by)
        self._require(keys + [col for col, _ in aggregations.values()], "summarise")
        return PlainTable(self._aggregate(self._frame, keys, aggregations))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _new(self, frame: pd.DataFrame) -> "Table":
        return self.__class__(frame)

    def _require(self, columns, operation: str) -> None:
        Validators.assert_columns_exist(self.columns, list(columns), operation=operation)

    @staticmethod
    def _keys(by: str | list[str] | None) -> list[str]:
        if by is None:
            return []
        return [by] if isinstance(by, str) else list(by)

    @staticmethod
    def _aggregate(frame: pd.DataFrame, keys: list[str], aggregations: dict) -> pd.DataFrame:
        if keys:
            return frame.groupby(keys, sort=True).agg(**aggregations).reset_index()
        row = {name: frame[col].agg(func) for name, (col, func) in aggregations.items()}
        return pd.DataFrame([row])


class PlainTable(Table):
    """A table without geometry."""

    def __init__(self, frame: pd.DataFrame) -> None:
        if isinstance(frame, gpd.GeoDataFrame):
            frame = pd.DataFrame(frame.drop(columns=[frame.geometry.name]))
        super().__init__(frame)


class SpatialTable(Table):
    """A table whose rows each carry a geometry.

    Args:
        frame: A ``GeoDataFrame`` with an active geometry column.
    """

    def __init__(self, frame: gpd.GeoDataFrame) -> None:
        if not isinstance(frame, gpd.GeoDataFrame):
            raise TypeError(f"SpatialTable needs a GeoDataFrame, got {type(frame).__name__}")
        super().__init__(frame)

    @property
    def geometry_column(self) -> str:
        return self._frame.geometry.name

    @property
    def crs(self):
        return self._frame.crs

    def select(self, *columns: str) -> "SpatialTable":
        self._require(columns, "select")
        keep = [c for c in columns if c != self.geometry_column] + [self.geometry_column]
        return SpatialTable(self._frame[keep])

    def summarise(self, by: str | list[str] | None = None, **aggregations: Aggregation) -> "SpatialTable":
        """Aggregate rows and union the geometries of each group."""
        keys = self._keys(by)
        self._require(keys + [col for col, _ in aggregations.values()], "summarise")
        geom_col = self.geometry_column

        if keys:
            attrs = self._aggregate(self._frame, keys, aggregations) if aggregations else None
            grouped = self._frame.groupby(keys, sort=True)[geom_col]
            geoms = grouped.agg(lambda s: shapely.union_all(s.values)).reset_index()
            frame = geoms if attrs is None else attrs.merge(geoms, on=keys)
        else:
            frame = self._aggregate(self._frame, keys, aggregations) if aggregations else pd.DataFrame(index=[0])
            frame[geom_col] = [shapely.union_all(self._frame[geom_col].values)]

        result = gpd.GeoDataFrame(frame, geometry=geom_col, crs=self._frame.crs)
        logger.debug("summarise: %d row(s) → %d group(s)", len(self), len(result))
        return SpatialTable(result)

    def drop_geometry(self) -> PlainTable:
        return PlainTable(self._frame)

    def to_collection(self, id_field: Hashable | None = None) -> FeatureCollection:
        """Convert back to a :class:`FeatureCollection` (ids from the index by default)."""
        return FeatureCollection.from_geodataframe(self._frame, id_field=id_field)
