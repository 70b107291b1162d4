"""
geoworkshop — Base Tool
========================
Abstract base class for the file-to-file tools in :mod:`geoworkshop.tools`.

Design Pattern:
    Template Method — ``run()`` fixes the pipeline (validate → process →
    report) and each tool fills in ``validate_inputs`` and ``process``.
    ``summary()`` lets a tool add its own one-line result to the final log
    message.

Usage::

    from geoworkshop.base_tool import GeoTool

    class CountTool(GeoTool):
        def validate_inputs(self) -> None:
            Validators.assert_file_exists(self.input_path)

        def process(self) -> None:
            self.count = len(GeometryStore().load(self.input_path))

        def summary(self) -> str:
            return f"{self.count} feature(s)"
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path

# Package logger; modules log through child loggers named
# "geoworkshop.<module>".
logger = logging.getLogger("geoworkshop")

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s — %(message)s"


class GeoTool(ABC):
    """One input file in, one output file out.

    Attributes:
        input_path: Primary input (vector or raster file).
        output_path: Where :meth:`process` writes its result.
        verbose: Log at DEBUG instead of INFO.
        elapsed: Wall-clock seconds of the last :meth:`run`, or ``None``
                 before the first run.

    Example::

        tool = ReprojectTool(
            input_path=Path("gages.gpkg"),
            output_path=Path("gages_utm.gpkg"),
            target_crs="EPSG:32614",
        )
        tool.run()
    """

    def __init__(
        self,
        input_path: Path,
        output_path: Path,
        *,
        verbose: bool = False,
    ) -> None:
        self.input_path: Path = Path(input_path)
        self.output_path: Path = Path(output_path)
        self.verbose: bool = verbose
        self.elapsed: float | None = None

        configure_logging(verbose)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def validate_inputs(self) -> None:
        """Check paths, formats and arguments before any data is read.

        Raises:
            InputValidationError: For a missing file, an unsupported
                extension or an out-of-range argument.
            CRSError: For an unparseable CRS argument.
        """

    @abstractmethod
    def process(self) -> None:
        """Read, transform and write.  Only called after validation passed."""

    def summary(self) -> str:
        return ""

    # ------------------------------------------------------------------
    # Template method
    # ------------------------------------------------------------------

    def run(self) -> Path:
        """Validate, process, then log the outcome.

        Returns:
            :attr:`output_path`, so calls can be chained into the next tool.

        Raises:
            GeoWorkshopError: Whatever ``validate_inputs`` or ``process``
                raised, unchanged.
        """
        name = self.__class__.__name__
        logger.info("Starting %s on %s", name, self.input_path.name)
        start = time.perf_counter()

        self.validate_inputs()
        self.process()

        self.elapsed = time.perf_counter() - start
        detail = self.summary()
        logger.info(
            "%s completed in %.2fs%s → %s",
            name,
            self.elapsed,
            f" ({detail})" if detail else "",
            self.output_path,
        )
        return self.output_path

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"input_path={self.input_path!r}, "
            f"output_path={self.output_path!r})"
        )


def configure_logging(verbose: bool = False) -> None:
    """Attach one console handler to the ``geoworkshop`` logger.

    Repeated calls only adjust the level, so tools created in a loop do not
    duplicate output.
    """
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%H:%M:%S"))
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
