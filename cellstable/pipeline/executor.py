"""In-memory stage executor."""

from collections import deque
from typing import Any, Callable, Dict, List, Optional
import time

from .logger import PipelineLogger


class InMemoryExecutor:
    """Runs registered Python stage functions in dependency order.

    Each stage is called as ``func(**kwargs, stage_results=results)``,
    where ``results`` maps already-completed stage ids to their return
    values. A failing stage is logged and its exception re-raised; no
    partial result is returned.

    Parameters
    ----------
    logger : PipelineLogger, optional
        Logger instance

    Example
    -------
    >>> executor = InMemoryExecutor()
    >>> executor.register_stage("clean", clean_func)
    >>> executor.register_stage("normalize", normalize_func, depends_on=["clean"])
    >>> results = executor.run(counts=counts)
    """

    def __init__(self, logger: Optional[PipelineLogger] = None):
        self.logger = logger
        self.stages: Dict[str, Dict[str, Any]] = {}
        self.completed_stages: List[str] = []
        self.durations: Dict[str, float] = {}

    def register_stage(
        self,
        stage_id: str,
        func: Callable,
        depends_on: Optional[List[str]] = None,
        name: Optional[str] = None,
    ) -> None:
        """Register a stage function.

        Parameters
        ----------
        stage_id : str
            Stage identifier
        func : Callable
            Stage function to execute
        depends_on : List[str], optional
            List of stage IDs this stage depends on
        name : str, optional
            Human-readable stage name
        """
        if stage_id in self.stages:
            raise ValueError(f"Stage '{stage_id}' is already registered")
        self.stages[stage_id] = {
            "func": func,
            "depends_on": list(depends_on or []),
            "name": name or stage_id,
        }

    def _get_execution_order(self) -> List[str]:
        """Compute stage execution order via topological sort."""
        for stage_id, stage in self.stages.items():
            unknown = [dep for dep in stage["depends_on"] if dep not in self.stages]
            if unknown:
                raise ValueError(f"Stage '{stage_id}' depends on unknown stages {unknown}")

        in_degree = {stage_id: len(stage["depends_on"]) for stage_id, stage in self.stages.items()}
        queue = deque([sid for sid, degree in in_degree.items() if degree == 0])
        order = []

        while queue:
            stage_id = queue.popleft()
            order.append(stage_id)

            for other_id, other_stage in self.stages.items():
                if stage_id in other_stage["depends_on"]:
                    in_degree[other_id] -= 1
                    if in_degree[other_id] == 0:
                        queue.append(other_id)

        if len(order) != len(self.stages):
            raise ValueError("Circular dependency detected")

        return order

    def run(self, **kwargs) -> Dict[str, Any]:
        """Execute all registered stages in order.

        Parameters
        ----------
        **kwargs
            Arguments passed to each stage function

        Returns
        -------
        Dict[str, Any]
            Map of stage_id to stage result
        """
        order = self._get_execution_order()
        results: Dict[str, Any] = {}
        self.completed_stages = []
        self.durations = {}

        for stage_id in order:
            stage = self.stages[stage_id]
            if self.logger:
                self.logger.log_stage_start(stage_id, stage["name"])

            start_time = time.time()
            try:
                results[stage_id] = stage["func"](**kwargs, stage_results=results)
            except Exception as e:
                if self.logger:
                    self.logger.log_stage_error(stage_id, f"{type(e).__name__}: {e}")
                raise

            duration = time.time() - start_time
            self.durations[stage_id] = duration
            self.completed_stages.append(stage_id)
            if self.logger:
                self.logger.log_stage_complete(stage_id, duration)

        return results
