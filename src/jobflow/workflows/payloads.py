"""Build stage payloads from workflow parameters and accumulated stage data."""

from __future__ import annotations

import logging

from jobflow.jobs.models import (
    ExtendedPathFinderPayload,
    FileRelevanceAssessmentPayload,
    GenericLlmStreamPayload,
    ImplementationPlanPayload,
    PathCorrectionPayload,
    RegexFileFilterPayload,
    RegexPatternGenerationPayload,
    TaskRefinementPayload,
    TaskType,
    TextImprovementPayload,
    WebSearchExecutionPayload,
    WebSearchPromptsGenerationPayload,
)
from jobflow.workflows.models import IntermediateData, PayloadBuilder, WorkflowParams

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_PATHS = (".git", "node_modules", "target", "dist", "build")


def build_regex_pattern_generation(
    params: WorkflowParams,
    data: IntermediateData,
) -> RegexPatternGenerationPayload:
    del data
    directory_tree = params.extra.get("directory_tree")
    return RegexPatternGenerationPayload(
        task_description=params.task_description,
        directory_tree=directory_tree if isinstance(directory_tree, str) else None,
    )


def build_regex_file_filter(
    params: WorkflowParams,
    data: IntermediateData,
) -> RegexFileFilterPayload:
    del data
    roots = params.extra.get("root_directories")
    if isinstance(roots, list | tuple) and roots:
        root_directories = tuple(str(item) for item in roots)
    else:
        root_directories = (params.project_directory,) if params.project_directory else ()
    return RegexFileFilterPayload(
        task_description=params.task_description,
        root_directories=root_directories,
        excluded_paths=params.excluded_paths or DEFAULT_EXCLUDED_PATHS,
    )


def build_file_relevance_assessment(
    params: WorkflowParams,
    data: IntermediateData,
) -> FileRelevanceAssessmentPayload:
    files = tuple(data.locally_filtered_files or ())
    if not files:
        logger.info("No locally filtered files available; relevance assessment gets empty input")
    return FileRelevanceAssessmentPayload(
        task_description=params.task_description,
        locally_filtered_files=files,
    )


def build_extended_path_finder(
    params: WorkflowParams,
    data: IntermediateData,
) -> ExtendedPathFinderPayload:
    roots = params.extra.get("root_directories")
    return ExtendedPathFinderPayload(
        task_description=params.task_description,
        initial_paths=tuple(data.ai_filtered_files or ()),
        selected_root_directories=(
            tuple(str(item) for item in roots) if isinstance(roots, list | tuple) else ()
        ),
    )


def build_path_correction(params: WorkflowParams, data: IntermediateData) -> PathCorrectionPayload:
    return PathCorrectionPayload(
        task_description=params.task_description,
        paths_to_correct=tuple(data.extended_unverified_paths or ()),
    )


def build_implementation_plan(
    params: WorkflowParams,
    data: IntermediateData,
) -> ImplementationPlanPayload:
    return ImplementationPlanPayload(
        task_description=params.task_description,
        relevant_files=tuple(data.final_selected_files()),
    )


def build_task_refinement(params: WorkflowParams, data: IntermediateData) -> TaskRefinementPayload:
    return TaskRefinementPayload(
        task_description=params.task_description,
        relevant_files=tuple(data.final_selected_files()),
    )


def build_text_improvement(
    params: WorkflowParams,
    data: IntermediateData,
) -> TextImprovementPayload:
    del data
    return TextImprovementPayload(text_to_improve=params.task_description)


def build_web_search_prompts_generation(
    params: WorkflowParams,
    data: IntermediateData,
) -> WebSearchPromptsGenerationPayload:
    del data
    return WebSearchPromptsGenerationPayload(task_description=params.task_description)


def build_web_search_execution(
    params: WorkflowParams,
    data: IntermediateData,
) -> WebSearchExecutionPayload:
    del params
    return WebSearchExecutionPayload(prompts=tuple(data.web_search_prompts or ()))


def build_generic_llm_stream(
    params: WorkflowParams,
    data: IntermediateData,
) -> GenericLlmStreamPayload:
    del data
    system_prompt = params.extra.get("system_prompt")
    return GenericLlmStreamPayload(
        prompt_text=params.task_description,
        system_prompt=system_prompt if isinstance(system_prompt, str) else None,
    )


DEFAULT_PAYLOAD_BUILDERS: dict[TaskType, PayloadBuilder] = {
    TaskType.REGEX_PATTERN_GENERATION: build_regex_pattern_generation,
    TaskType.REGEX_FILE_FILTER: build_regex_file_filter,
    TaskType.FILE_RELEVANCE_ASSESSMENT: build_file_relevance_assessment,
    TaskType.EXTENDED_PATH_FINDER: build_extended_path_finder,
    TaskType.PATH_CORRECTION: build_path_correction,
    TaskType.IMPLEMENTATION_PLAN: build_implementation_plan,
    TaskType.TASK_REFINEMENT: build_task_refinement,
    TaskType.TEXT_IMPROVEMENT: build_text_improvement,
    TaskType.WEB_SEARCH_PROMPTS_GENERATION: build_web_search_prompts_generation,
    TaskType.WEB_SEARCH_EXECUTION: build_web_search_execution,
    TaskType.GENERIC_LLM_STREAM: build_generic_llm_stream,
}


def default_payload_builder(task_type: TaskType) -> PayloadBuilder:
    """Return the built-in payload builder for ``task_type``."""

    return DEFAULT_PAYLOAD_BUILDERS[task_type]
