# parallel_processing.py

import concurrent.futures  # For parallel execution of tasks
import logging  # For logging process information and errors
import threading  # For cooperative cancellation
from abc import ABC, abstractmethod  # For defining an abstract base class
from typing import Any, Dict, List, Optional  # For type hints

logger = logging.getLogger(__name__)  # Initialize logger for module


class ParallelProcessor(ABC):
    """
    Abstract base class for fanning a task out over a list of resources.

    Each resource is processed on its own worker thread. A failure in one resource
    never aborts the others: it is handed to ``handle_failure`` and its return value
    takes the place of the result.
    """

    def __init__(self, resource_ids: List[str], max_workers: Optional[int] = None,
                 cancel_event: Optional[threading.Event] = None):
        # Initialize resource identifiers to process
        self.resource_ids = resource_ids
        # One worker per resource unless bounded explicitly
        self.max_workers = max_workers or max(len(resource_ids), 1)
        # Shared flag checked by subclasses between units of work
        self.cancel_event = cancel_event or threading.Event()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @abstractmethod
    def process_resource(self, resource_id: str) -> Any:
        """
        Abstract method for processing a single resource.
        This method must be implemented in derived classes.

        Args:
            resource_id (str): The unique identifier for the resource.

        Returns:
            Any: Result of processing, defined by subclass implementation.
        """
        pass  # Must be implemented by subclass

    @abstractmethod
    def handle_failure(self, resource_id: str, error: Exception) -> Any:
        """
        Abstract method converting an exception raised for a resource into a result.

        Args:
            resource_id (str): The resource whose task failed.
            error (Exception): The exception raised by process_resource.

        Returns:
            Any: Result recorded for the failed resource.
        """
        pass  # Must be implemented by subclass

    def execute(self) -> Dict[str, Any]:
        """
        Executes the processing of all resources in parallel.

        Returns:
            Dict[str, Any]: Result per resource ID. Completion order is not preserved;
            callers reorder by their own resource list.
        """
        results: Dict[str, Any] = {}
        if not self.resource_ids:
            return results

        # Set up ThreadPoolExecutor for parallel execution
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            # Map each submitted task back to its resource ID
            future_to_resource_id = {
                executor.submit(self.process_resource, resource_id): resource_id
                for resource_id in self.resource_ids
            }

            # Handle task completion and log outcomes for each future
            for future in concurrent.futures.as_completed(future_to_resource_id):
                resource_id = future_to_resource_id[future]
                try:
                    results[resource_id] = future.result()
                    logger.info(f"Successfully processed resource {resource_id}")
                except Exception as e:
                    # Task failures are isolated to their resource
                    logger.error(f"Error processing resource {resource_id}: {e}")
                    results[resource_id] = self.handle_failure(resource_id, e)
        return results
