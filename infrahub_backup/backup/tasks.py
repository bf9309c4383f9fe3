"""Guard against backing up while task manager flows are still running."""

from .._utils import logger, wait_until
from ..exceptions import OperationTimeoutError, RunningTasksError
from .exporters.taskmanager_exporter import TaskManagerExporter


class RunningTaskMonitor:
    """Wait for in-flight task manager flow runs to drain."""

    def __init__(self, task_manager: TaskManagerExporter, timeout: float, poll_interval: float = 5.0):
        self.task_manager = task_manager
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.last_count = 0

    async def _idle(self) -> bool:
        self.last_count = await self.task_manager.count_running_tasks()
        if self.last_count:
            logger.info(f"Waiting for {self.last_count} running task(s) to complete...")
        return self.last_count == 0

    async def wait_for_idle(self) -> None:
        """Raises:
            RunningTasksError: If tasks are still running after ``timeout`` seconds
        """
        try:
            await wait_until(self._idle, self.timeout, self.poll_interval, "running tasks to complete")
        except OperationTimeoutError as err:
            raise RunningTasksError(
                f"{self.last_count} task(s) still running after {self.timeout:g}s; "
                "retry later or use --force"
            ) from err
        logger.info("No running tasks detected")
