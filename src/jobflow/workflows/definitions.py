"""Built-in workflow definitions."""

from __future__ import annotations

from jobflow.jobs.models import TaskType
from jobflow.workflows.models import IntermediateData, StageDefinition, WorkflowDefinition
from jobflow.workflows.payloads import (
    build_extended_path_finder,
    build_file_relevance_assessment,
    build_path_correction,
    build_regex_file_filter,
    build_web_search_execution,
    build_web_search_prompts_generation,
)

FILE_FINDER_WORKFLOW = "file_finder"
WEB_SEARCH_WORKFLOW = "web_search"

REGEX_FILE_FILTER_STAGE = "regex_file_filter"
FILE_RELEVANCE_STAGE = "file_relevance_assessment"
EXTENDED_PATH_FINDER_STAGE = "extended_path_finder"
PATH_CORRECTION_STAGE = "path_correction"
WEB_SEARCH_PROMPTS_STAGE = "web_search_prompts_generation"
WEB_SEARCH_EXECUTION_STAGE = "web_search_execution"


def has_locally_filtered_files(data: IntermediateData) -> bool:
    return data.locally_filtered_files is not None


def has_ai_filtered_files(data: IntermediateData) -> bool:
    return data.ai_filtered_files is not None


def has_unverified_paths(data: IntermediateData) -> bool:
    return bool(data.extended_unverified_paths)


def has_web_search_prompts(data: IntermediateData) -> bool:
    return bool(data.web_search_prompts)


def file_finder_workflow() -> WorkflowDefinition:
    """Filter files locally, rank them, widen the selection, then fix bad paths.

    Path correction only runs when the path finder reported unverified paths,
    so it is not required for completion.
    """

    return WorkflowDefinition(
        name=FILE_FINDER_WORKFLOW,
        description="Find the project files relevant to a task description.",
        stages=(
            StageDefinition(
                stage_name=REGEX_FILE_FILTER_STAGE,
                task_type=TaskType.REGEX_FILE_FILTER,
                build_payload=build_regex_file_filter,
            ),
            StageDefinition(
                stage_name=FILE_RELEVANCE_STAGE,
                task_type=TaskType.FILE_RELEVANCE_ASSESSMENT,
                is_eligible=has_locally_filtered_files,
                dependencies=(REGEX_FILE_FILTER_STAGE,),
                build_payload=build_file_relevance_assessment,
            ),
            StageDefinition(
                stage_name=EXTENDED_PATH_FINDER_STAGE,
                task_type=TaskType.EXTENDED_PATH_FINDER,
                is_eligible=has_ai_filtered_files,
                dependencies=(FILE_RELEVANCE_STAGE,),
                build_payload=build_extended_path_finder,
            ),
            StageDefinition(
                stage_name=PATH_CORRECTION_STAGE,
                task_type=TaskType.PATH_CORRECTION,
                is_eligible=has_unverified_paths,
                dependencies=(EXTENDED_PATH_FINDER_STAGE,),
                required=False,
                build_payload=build_path_correction,
            ),
        ),
    )


def web_search_workflow() -> WorkflowDefinition:
    """Turn a task description into research prompts, then run the searches."""

    return WorkflowDefinition(
        name=WEB_SEARCH_WORKFLOW,
        description="Research a task on the web.",
        stages=(
            StageDefinition(
                stage_name=WEB_SEARCH_PROMPTS_STAGE,
                task_type=TaskType.WEB_SEARCH_PROMPTS_GENERATION,
                build_payload=build_web_search_prompts_generation,
            ),
            StageDefinition(
                stage_name=WEB_SEARCH_EXECUTION_STAGE,
                task_type=TaskType.WEB_SEARCH_EXECUTION,
                is_eligible=has_web_search_prompts,
                dependencies=(WEB_SEARCH_PROMPTS_STAGE,),
                build_payload=build_web_search_execution,
            ),
        ),
    )


def default_definitions() -> dict[str, WorkflowDefinition]:
    definitions = [file_finder_workflow(), web_search_workflow()]
    for definition in definitions:
        definition.validate()
    return {definition.name: definition for definition in definitions}
