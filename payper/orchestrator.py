"""
Generation orchestrator.

Selects a provider adapter by model id, creates tasks and serves normalized
status. Polling is caller-driven: each poll is an independent read whose
only side effect is advancing the task's last_polled_at. Once a task reaches
a terminal state that status is cached and returned verbatim to every later
poll, without calling the provider again.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from dataclasses import replace
from datetime import datetime, UTC
from typing import Callable, Dict, List, Optional

from payper.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from payper.errors import InvalidOptions, ProviderTaskFailed, ProviderUnavailable, TaskNotFound
from payper.models import get_model
from payper.normalizer import normalize
from payper.providers import ProviderAdapter
from payper.schemas import GenerationTask, MediaType, ProviderId, TaskState, TaskStatus

logger = logging.getLogger("payper.orchestrator")


class GenerationOrchestrator:
    """
    Creates and tracks generation tasks across providers.

    Task creation is never retried here: a failed create surfaces to the
    caller, who retries the whole request.
    """

    def __init__(
        self,
        adapters: Dict[ProviderId, ProviderAdapter],
        breakers: Optional[Dict[ProviderId, CircuitBreaker]] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
    ):
        self.adapters = dict(adapters)
        self.breakers = dict(breakers or {})
        # status reads trip their own circuit so they never block task creation
        self.query_breakers: Dict[ProviderId, CircuitBreaker] = {}
        for provider_id in self.adapters:
            self.breakers.setdefault(
                provider_id, CircuitBreaker(provider_id.value, breaker_config)
            )
            self.query_breakers[provider_id] = CircuitBreaker(
                f"{provider_id.value}:query", breaker_config
            )
        self._tasks: Dict[str, GenerationTask] = {}
        self._lock = threading.Lock()

    def _adapter_for(self, model_id: str) -> tuple[ProviderId, ProviderAdapter]:
        model = get_model(model_id)
        adapter = self.adapters.get(model.provider_id)
        if adapter is None:
            raise ProviderUnavailable(
                f"No adapter configured for provider '{model.provider_id.value}'",
                provider_id=model.provider_id.value,
            )
        return model.provider_id, adapter

    def start(
        self,
        model_id: str,
        prompt: str,
        options: Optional[dict] = None,
        media_type: Optional[MediaType] = None,
        generation_id: Optional[str] = None,
    ) -> GenerationTask:
        """
        Create a task at the model's provider.

        Raises:
            UnknownModel: model id not in the catalog
            InvalidOptions: options rejected locally or by the provider
            ProviderUnavailable: provider unreachable, erroring or circuit open
        """
        model = get_model(model_id)
        if media_type is not None and MediaType(media_type) != model.media_type:
            raise InvalidOptions(
                f"Model '{model_id}' produces {model.media_type.value}, not {MediaType(media_type).value}"
            )
        provider_id, adapter = self._adapter_for(model_id)
        prepared = adapter.prepare_options(options)

        task_id = self.breakers[provider_id].call(adapter.create_task, prompt, prepared)

        task = GenerationTask(
            task_id=task_id,
            provider_id=provider_id,
            model_id=model_id,
            generation_id=generation_id,
        )
        with self._lock:
            self._tasks[task_id] = task
        logger.info(
            "Started task %s on %s for model %s (generation %s)",
            task_id, provider_id.value, model_id, generation_id,
        )
        return copy.copy(task)

    def poll(self, task_id: str, model_id: Optional[str] = None) -> TaskStatus:
        """
        Return the normalized status of a task.

        Unknown task ids are adopted when a model id is supplied, so a task
        created by another process can still be polled. The task is only
        registered once its provider has answered for it.
        """
        now = datetime.now(UTC)
        with self._lock:
            task = self._tasks.get(task_id)
            if task is not None:
                task.last_polled_at = now
                if task.final_status is not None:
                    return task.final_status
                provider_id = task.provider_id
                task_model = task.model_id
        if task is None:
            if not model_id:
                raise TaskNotFound(task_id)
            provider_id, _ = self._adapter_for(model_id)
            task_model = model_id

        adapter = self.adapters[provider_id]
        raw = self.query_breakers[provider_id].call(adapter.query_task, task_id)
        status = replace(normalize(raw), task_id=task_id, model_id=task_model)

        with self._lock:
            if task is None:
                task = self._tasks.setdefault(
                    task_id,
                    GenerationTask(task_id=task_id, provider_id=provider_id, model_id=task_model),
                )
                task.last_polled_at = now
            # another poller may have recorded the terminal status first
            if task.final_status is not None:
                return task.final_status
            if status.state.is_terminal:
                task.final_status = status
                task.state = status.state
                logger.info("Task %s reached %s", task_id, status.state.value)
            else:
                task.state = TaskState.PROCESSING
        return status

    def wait(
        self,
        task_id: str,
        model_id: Optional[str] = None,
        timeout: float = 600.0,
        interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> TaskStatus:
        """
        Poll until the task is terminal.

        Raises:
            ProviderTaskFailed: the provider reported failure
            TimeoutError: still processing after `timeout` seconds
        """
        deadline = clock() + timeout
        while True:
            status = self.poll(task_id, model_id)
            if status.state == TaskState.COMPLETED:
                return status
            if status.state == TaskState.FAILED:
                task = self.get_task(task_id)
                raise ProviderTaskFailed(
                    task_id,
                    status.error_message,
                    error_code=status.error_code,
                    provider_id=task.provider_id.value if task else None,
                )
            if clock() >= deadline:
                raise TimeoutError(f"Task {task_id} still processing after {timeout:.0f}s")
            sleep(interval)

    def get_task(self, task_id: str) -> Optional[GenerationTask]:
        with self._lock:
            task = self._tasks.get(task_id)
            return copy.copy(task) if task else None

    def list_tasks(self) -> List[GenerationTask]:
        with self._lock:
            return [copy.copy(t) for t in self._tasks.values()]

    def get_stats(self) -> dict:
        """Task counts by state and circuit state per provider."""
        with self._lock:
            counts: Dict[str, int] = {}
            for task in self._tasks.values():
                counts[task.state.value] = counts.get(task.state.value, 0) + 1
        return {
            "tasks": counts,
            "circuits": {p.value: b.get_stats() for p, b in self.breakers.items()},
            "query_circuits": {p.value: b.get_stats() for p, b in self.query_breakers.items()},
        }
