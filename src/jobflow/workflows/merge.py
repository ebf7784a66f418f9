"""Merge completed stage output into workflow intermediate data.

Each task type writes only the fields it owns. A missing or wrongly typed field
is logged and the previous value is kept. Output that cannot be decoded at all
raises :class:`ExtractionError`, as does a research prompt response without
any prompts. Merging returns a new value and applying the same output twice
gives the same result.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from jobflow.jobs.errors import ExtractionError
from jobflow.jobs.models import TaskType
from jobflow.workflows.models import IntermediateData

logger = logging.getLogger(__name__)

_RESEARCH_TASK = re.compile(r"<research_task\b[^>]*>(.*?)</research_task>", re.DOTALL)
_CDATA = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)

StageMerger = Callable[[IntermediateData, Any], IntermediateData]


def merge_stage_output(
    task_type: TaskType,
    data: IntermediateData,
    output: Any,
    *,
    stage_name: str | None = None,
) -> IntermediateData:
    """Return ``data`` updated with one stage's output."""

    text_merger = _TEXT_MERGERS.get(task_type)
    if text_merger is not None:
        return text_merger(data, output)
    merger = _STRUCTURED_MERGERS.get(task_type)
    if merger is None:
        raw_outputs = dict(data.raw_outputs)
        raw_outputs[stage_name or task_type.value] = _decode_if_json(output)
        return replace(data, raw_outputs=raw_outputs)
    return merger(data, decode_stage_output(task_type, output))


def decode_stage_output(task_type: TaskType, output: Any) -> dict[str, Any] | list[Any]:
    """Decode a processor response into a JSON object or array."""

    decoded = output
    if isinstance(output, bytes | bytearray):
        decoded = output.decode("utf-8", errors="replace")
    if isinstance(decoded, str):
        try:
            decoded = json.loads(decoded)
        except json.JSONDecodeError as error:
            raise ExtractionError(task_type.value, f"Output is not valid JSON: {error}") from error
    if not isinstance(decoded, dict | list):
        raise ExtractionError(
            task_type.value,
            f"Expected a JSON object or array, got {type(decoded).__name__}.",
        )
    return copy.deepcopy(decoded)


def _merge_regex_patterns(
    data: IntermediateData,
    output: dict[str, Any] | list[Any],
) -> IntermediateData:
    if not isinstance(output, dict):
        logger.warning("Regex pattern output is not an object; keeping existing patterns")
        return data
    return replace(data, raw_regex_patterns=output)


def _merge_regex_file_filter(
    data: IntermediateData,
    output: dict[str, Any] | list[Any],
) -> IntermediateData:
    candidates = output if isinstance(output, list) else output.get("filteredFiles")
    files = _string_list(
        candidates,
        field_name="filteredFiles",
        task_type=TaskType.REGEX_FILE_FILTER,
    )
    if files is None:
        return data
    return replace(data, locally_filtered_files=files)


def _merge_file_relevance(
    data: IntermediateData,
    output: dict[str, Any] | list[Any],
) -> IntermediateData:
    task_type = TaskType.FILE_RELEVANCE_ASSESSMENT
    if not isinstance(output, dict):
        logger.warning("[%s] output is not an object; keeping existing data", task_type.value)
        return data
    updated = data
    files = _string_list(
        output.get("relevantFiles"),
        field_name="relevantFiles",
        task_type=task_type,
    )
    if files is not None:
        updated = replace(updated, ai_filtered_files=files)
    token_count = output.get("tokenCount")
    if isinstance(token_count, int) and not isinstance(token_count, bool) and token_count >= 0:
        updated = replace(updated, ai_filtered_files_token_count=token_count)
    else:
        logger.warning(
            "[%s] missing or invalid 'tokenCount'; keeping existing value",
            task_type.value,
        )
    return updated


def _merge_extended_path_finder(
    data: IntermediateData,
    output: dict[str, Any] | list[Any],
) -> IntermediateData:
    task_type = TaskType.EXTENDED_PATH_FINDER
    if not isinstance(output, dict):
        logger.warning("[%s] output is not an object; keeping existing data", task_type.value)
        return data
    verified = _string_list(
        output.get("verifiedPaths"),
        field_name="verifiedPaths",
        task_type=task_type,
    )
    if verified is None:
        return data
    unverified = output.get("unverifiedPaths", [])
    unverified_paths = _string_list(unverified, field_name="unverifiedPaths", task_type=task_type)
    return replace(
        data,
        extended_verified_paths=verified,
        extended_unverified_paths=(
            unverified_paths if unverified_paths is not None else data.extended_unverified_paths
        ),
    )


def _merge_path_correction(
    data: IntermediateData,
    output: dict[str, Any] | list[Any],
) -> IntermediateData:
    task_type = TaskType.PATH_CORRECTION
    candidates = output.get("correctedPaths") if isinstance(output, dict) else None
    corrected = _string_list(candidates, field_name="correctedPaths", task_type=task_type)
    if corrected is None:
        return data
    return replace(data, extended_corrected_paths=corrected)



def _merge_web_search_prompts(data: IntermediateData, output: Any) -> IntermediateData:
    task_type = TaskType.WEB_SEARCH_PROMPTS_GENERATION
    text = output
    if isinstance(output, bytes | bytearray):
        text = output.decode("utf-8", errors="replace")
    if isinstance(text, str) and "<research_task" in text:
        prompts = [
            _CDATA.sub(r"\1", match.group(1)).strip() for match in _RESEARCH_TASK.finditer(text)
        ]
        prompts = [prompt for prompt in prompts if prompt]
    else:
        decoded = decode_stage_output(task_type, output)
        candidates = decoded.get("prompts") if isinstance(decoded, dict) else decoded
        prompts = _string_list(candidates, field_name="prompts", task_type=task_type) or []
    if not prompts:
        raise ExtractionError(task_type.value, "No research prompts found in the response.")
    logger.debug("[%s] extracted %d prompts", task_type.value, len(prompts))
    return replace(data, web_search_prompts=prompts)


def _merge_web_search_execution(
    data: IntermediateData,
    output: dict[str, Any] | list[Any],
) -> IntermediateData:
    task_type = TaskType.WEB_SEARCH_EXECUTION
    results = output if isinstance(output, list) else output.get("searchResults", [])
    if not isinstance(results, list):
        logger.warning("[%s] invalid 'searchResults'; treating as empty", task_type.value)
        results = []
    return replace(data, web_search_results=results)


_STRUCTURED_MERGERS: dict[TaskType, StageMerger] = {
    TaskType.REGEX_PATTERN_GENERATION: _merge_regex_patterns,
    TaskType.REGEX_FILE_FILTER: _merge_regex_file_filter,
    TaskType.FILE_RELEVANCE_ASSESSMENT: _merge_file_relevance,
    TaskType.EXTENDED_PATH_FINDER: _merge_extended_path_finder,
    TaskType.PATH_CORRECTION: _merge_path_correction,
    TaskType.WEB_SEARCH_EXECUTION: _merge_web_search_execution,
}

_TEXT_MERGERS: dict[TaskType, StageMerger] = {
    TaskType.WEB_SEARCH_PROMPTS_GENERATION: _merge_web_search_prompts,
}

_OWNED_FIELDS: dict[TaskType, tuple[str, ...]] = {
    TaskType.REGEX_PATTERN_GENERATION: ("raw_regex_patterns",),
    TaskType.REGEX_FILE_FILTER: ("locally_filtered_files",),
    TaskType.FILE_RELEVANCE_ASSESSMENT: ("ai_filtered_files", "ai_filtered_files_token_count"),
    TaskType.EXTENDED_PATH_FINDER: ("extended_verified_paths", "extended_unverified_paths"),
    TaskType.PATH_CORRECTION: ("extended_corrected_paths",),
    TaskType.WEB_SEARCH_PROMPTS_GENERATION: ("web_search_prompts",),
    TaskType.WEB_SEARCH_EXECUTION: ("web_search_results",),
}


def discard_stage_output(
    task_type: TaskType,
    data: IntermediateData,
    *,
    stage_name: str,
) -> IntermediateData:
    """Return ``data`` without the fields a stage of ``task_type`` writes."""

    owned = _OWNED_FIELDS.get(task_type)
    if owned is None:
        raw_outputs = {key: value for key, value in data.raw_outputs.items() if key != stage_name}
        return replace(data, raw_outputs=raw_outputs)
    return replace(data, **dict.fromkeys(owned))


def _string_list(value: Any, *, field_name: str, task_type: TaskType) -> list[str] | None:
    if not isinstance(value, list):
        logger.warning(
            "[%s] missing or invalid '%s'; keeping existing data",
            task_type.value,
            field_name,
        )
        return None
    items = [
        item if isinstance(item, str) else str(item)
        for item in value
        if isinstance(item, str | int | float) and not isinstance(item, bool)
    ]
    if len(items) != len(value):
        logger.warning(
            "[%s] dropped %d entries from '%s' that are not strings or numbers",
            task_type.value,
            len(value) - len(items),
            field_name,
        )
    return items


def _decode_if_json(output: Any) -> Any:
    if not isinstance(output, str):
        return copy.deepcopy(output)
    try:
        return json.loads(output)
    except json.JSONDecodeError:
        return output
