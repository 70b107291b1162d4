"""
geoworkshop — Configuration
============================
Configuration dataclasses with documented defaults, plus a JSON loader.

There is no module-level mutable options state: callers build (or load) a
:class:`WorkshopConfig` and pass the relevant section to the component that
needs it.

Example config file::

    {
        "service": {"timeout": 20, "max_attempts": 5, "backoff_factor": 1.0},
        "raster": {"tile_size": 512, "max_workers": 4},
        "render": {"figsize": [10, 8], "cmap": "terrain", "dpi": 150}
    }

Usage::

    from geoworkshop.config import load_config

    cfg = load_config(Path("workshop.json"))
    client = ServiceClient.from_config(cfg.service)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from geoworkshop.exceptions import InputValidationError

logger = logging.getLogger("geoworkshop.config")


# ---------------------------------------------------------------------------
# Configuration dataclasses
# ---------------------------------------------------------------------------


@dataclass
class ServiceConfig:
    """Network behavior for :class:`~geoworkshop.service.ServiceClient`.

    Attributes:
        timeout: Per-attempt HTTP timeout in seconds.
        max_attempts: Total attempts (first try included) before giving up.
        backoff_factor: Base delay in seconds; attempt *n* waits
                        ``backoff_factor * 2 ** (n - 1)``.
        max_backoff: Upper bound on any single backoff delay, in seconds.
        retry_statuses: HTTP statuses treated as transient.
        user_agent: Value of the ``User-Agent`` header.
    """

    timeout: float = 30.0
    max_attempts: int = 3
    backoff_factor: float = 0.5
    max_backoff: float = 30.0
    retry_statuses: tuple[int, ...] = (429, 500, 502, 503, 504)
    user_agent: str = "geoworkshop/1.0"


@dataclass
class RasterConfig:
    """Defaults for tiled raster processing.

    Attributes:
        tile_size: Edge length in cells of the square tiles read by
                   :meth:`~geoworkshop.raster_store.RasterStore.iter_tiles`.
        max_workers: Thread count for tile-parallel work; ``1`` is serial.
    """

    tile_size: int = 256
    max_workers: int = 1


@dataclass
class MapRenderConfig:
    """Explicit options for :func:`~geoworkshop.rendering.render_map`.

    Attributes:
        figsize: Figure size in inches ``(width, height)``.
        dpi: Output resolution for saved images.
        cmap: Matplotlib colormap used for rasters and numeric columns.
        column: Attribute column used to color vector layers, or ``None``
                for a single color.
        facecolor: Fill color for polygons when ``column`` is ``None``.
        edgecolor: Outline color for vector geometries.
        linewidth: Outline width in points.
        alpha: Layer opacity in ``[0, 1]``.
        title: Optional axes title.
        legend: Draw a legend / colorbar for the colored layer.
        show_axes: Keep axis ticks and labels.
    """

    figsize: tuple[float, float] = (8.0, 6.0)
    dpi: int = 100
    cmap: str = "viridis"
    column: str | None = None
    facecolor: str = "lightgrey"
    edgecolor: str = "black"
    linewidth: float = 0.5
    alpha: float = 1.0
    title: str | None = None
    legend: bool = False
    show_axes: bool = True


@dataclass
class WorkshopConfig:
    """Top-level configuration bundle."""

    service: ServiceConfig = field(default_factory=ServiceConfig)
    raster: RasterConfig = field(default_factory=RasterConfig)
    render: MapRenderConfig = field(default_factory=MapRenderConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


def _build(cls: type, raw: dict[str, Any], section: str) -> Any:
    """Instantiate dataclass *cls* from *raw*, rejecting unknown keys."""
    if not isinstance(raw, dict):
        raise InputValidationError(f"Config section '{section}' must be an object")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise InputValidationError(
            f"Unknown key(s) in config section '{section}': {', '.join(unknown)}"
        )
    values = dict(raw)
    for key in ("retry_statuses", "figsize"):
        if key in values and isinstance(values[key], list):
            values[key] = tuple(values[key])
    return cls(**values)


def load_config(config_path: Path) -> WorkshopConfig:
    """Parse a JSON configuration file into a :class:`WorkshopConfig`.

    Missing sections and keys keep their defaults.

    Args:
        config_path: Path to the JSON config file.

    Returns:
        A fully populated ``WorkshopConfig`` instance.

    Raises:
        InputValidationError: If the file cannot be read or parsed, or it
            contains unknown sections or keys.
    """
    config_path = Path(config_path)
    try:
        raw: dict[str, Any] = json.loads(config_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        raise InputValidationError(
            f"Failed to read config file '{config_path}': {exc}"
        ) from exc

    if not isinstance(raw, dict):
        raise InputValidationError(f"Config file '{config_path}' must hold a JSON object")

    unknown = sorted(set(raw) - {f.name for f in fields(WorkshopConfig)})
    if unknown:
        raise InputValidationError(
            f"Unknown section(s) in config file '{config_path}': {', '.join(unknown)}"
        )

    config = WorkshopConfig(
        service=_build(ServiceConfig, raw.get("service", {}), "service"),
        raster=_build(RasterConfig, raw.get("raster", {}), "raster"),
        render=_build(MapRenderConfig, raw.get("render", {}), "render"),
    )
    logger.debug("Loaded config from %s", config_path)
    return config
