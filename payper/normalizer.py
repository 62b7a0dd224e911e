"""
Status normalization.

Every provider reports task progress in its own vocabulary. Each raw status
variant has one normalization function, selected through a dispatch table
keyed by provider id. All of them map into processing / completed / failed.

Rules shared by every vocabulary:
- a "still running" sentinel is processing
- success without at least one artifact URL is processing, not completed
- a failure always carries a non-empty error message
"""

import json
import logging
from typing import Callable, Optional

from payper.schemas import (
    JobStateStatus,
    ProviderId,
    RawStatus,
    StatusFlagStatus,
    SuccessFlagStatus,
    TaskState,
    TaskStatus,
)

logger = logging.getLogger("payper.normalizer")

FAILED_STATUSES = {"CREATE_TASK_FAILED", "GENERATE_FAILED", "FAILED"}
FAILED_JOB_STATES = {"fail", "failed", "error"}
SUCCESS_JOB_STATES = {"success", "succeeded", "completed"}


def _failure_message(message: Optional[str], code: Optional[str]) -> str:
    if message and str(message).strip():
        return str(message)
    if code:
        return f"provider reported failure (code {code})"
    return "provider reported failure"


def _failed(task_id: str, code: Optional[str], message: Optional[str]) -> TaskStatus:
    return TaskStatus(
        task_id=task_id,
        state=TaskState.FAILED,
        error_code=code,
        error_message=_failure_message(message, code),
    )


def _completed_or_processing(task_id: str, urls, progress: Optional[str] = None) -> TaskStatus:
    urls = tuple(u for u in urls or () if u)
    if not urls:
        logger.debug("Task %s reported success with no artifacts; treating as processing", task_id)
        return TaskStatus(task_id=task_id, state=TaskState.PROCESSING, progress=progress)
    return TaskStatus(task_id=task_id, state=TaskState.COMPLETED, result_urls=urls, progress=progress)


def normalize_success_flag(raw: SuccessFlagStatus) -> TaskStatus:
    """successFlag: 0 running, 1 success, 2 or 3 failed."""
    if raw.success_flag == 1:
        return _completed_or_processing(raw.task_id, raw.result_urls)
    if raw.success_flag in (2, 3):
        return _failed(raw.task_id, raw.error_code, raw.error_message)
    return TaskStatus(task_id=raw.task_id, state=TaskState.PROCESSING)


def normalize_status_flag(raw: StatusFlagStatus) -> TaskStatus:
    """Named status (GENERATING / SUCCESS / *_FAILED) backed by successFlag."""
    status = (raw.status or "").upper()
    if status in FAILED_STATUSES or raw.success_flag == 2:
        return _failed(raw.task_id, raw.error_code, raw.error_message)
    if status == "SUCCESS" or raw.success_flag == 1:
        return _completed_or_processing(raw.task_id, raw.result_urls, raw.progress)
    return TaskStatus(task_id=raw.task_id, state=TaskState.PROCESSING, progress=raw.progress)


def parse_result_json(result_json) -> tuple:
    """Extract resultUrls from a resultJson blob; unparseable input yields ()."""
    if not result_json:
        return ()
    if isinstance(result_json, dict):
        data = result_json
    else:
        try:
            data = json.loads(result_json)
        except (TypeError, ValueError):
            logger.warning("Unparseable resultJson: %.200r", result_json)
            return ()
    if not isinstance(data, dict):
        return ()
    urls = data.get("resultUrls") or []
    if isinstance(urls, str):
        urls = [urls]
    return tuple(u for u in urls if isinstance(u, str) and u)


def normalize_job_state(raw: JobStateStatus) -> TaskStatus:
    """Named state: waiting / queuing / generating / success / fail."""
    state = (raw.state or "").lower()
    if state in FAILED_JOB_STATES:
        return _failed(raw.task_id, raw.fail_code, raw.fail_msg)
    if state in SUCCESS_JOB_STATES:
        return _completed_or_processing(raw.task_id, parse_result_json(raw.result_json))
    return TaskStatus(task_id=raw.task_id, state=TaskState.PROCESSING)


NORMALIZERS: dict[ProviderId, Callable[..., TaskStatus]] = {
    ProviderId.GPT4O_IMAGE: normalize_status_flag,
    ProviderId.VEO: normalize_success_flag,
    ProviderId.SORA: normalize_job_state,
    ProviderId.IDEOGRAM: normalize_job_state,
    ProviderId.QWEN: normalize_job_state,
    ProviderId.MOCK: normalize_job_state,
}


def normalize(raw: RawStatus) -> TaskStatus:
    """Normalize a raw provider status using the provider's dispatch entry."""
    try:
        normalizer = NORMALIZERS[raw.provider_id]
    except KeyError:
        raise ValueError(f"No status normalizer for provider '{raw.provider_id}'")
    return normalizer(raw)
