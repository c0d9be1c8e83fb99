"""Pipeline orchestration for CellStable.

Provides the train / integrate driver, run settings, the in-memory stage
executor and structured run logging.

Example
-------
>>> from cellstable.pipeline import AnalysisPipeline, PipelineLogger
>>> logger = PipelineLogger("logs/").setup()
>>> pipeline = AnalysisPipeline(logger=logger)
>>> training = pipeline.train(counts)
"""

from .config import PipelineSettings, RunConfig
from .executor import InMemoryExecutor
from .logger import ColoredFormatter, PipelineLogger
from .runner import AnalysisPipeline, IntegrationRun, TrainingRun

__all__ = [
    "AnalysisPipeline",
    "TrainingRun",
    "IntegrationRun",
    "PipelineSettings",
    "RunConfig",
    "InMemoryExecutor",
    "PipelineLogger",
    "ColoredFormatter",
]
