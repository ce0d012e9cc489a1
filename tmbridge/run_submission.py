"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Submission of a test run's results to the target system.

The target needs a section to hold the cases, one case per execution and a
run referencing those cases. The created section's id is merged into the
pipeline credentials so that paths such as ``/add_case/{section_id}`` resolve.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from tmbridge.core.logging import get_logger, log_operation
from tmbridge.errors import FATAL_ERRORS, DataError, ETLError, ValidationError
from tmbridge.pipeline import MigrationPipeline

logger = get_logger("tmbridge.run_submission")

DEFAULT_SECTION_NAME = "Test section/folder"
DEFAULT_RUN_NAME = "Test Run"


class SubmissionStrategy(str, Enum):
    """How case creation requests are dispatched."""

    BATCHED = "batched"  # Through the target executor, order preserved
    SEQUENTIAL = "sequential"  # One request at a time


@dataclass
class RunSubmission:
    """What a submission created on the target."""

    section: dict[str, Any]
    case_ids: list[Any] = field(default_factory=list)
    run: Any = None
    failed_cases: list[str] = field(default_factory=list)


def _response_id(response: Any) -> Any:
    if isinstance(response, Mapping):
        return response.get("id")
    return None


class TestRunSubmitter:
    """
    Creates a section, one case per execution and a run on the target.

    Args:
        pipeline: An initialized pipeline whose target defines ``sections``,
            ``cases`` and ``runs`` create operations
        strategy: Case creation dispatch strategy
        section_name: Name of the section created for the cases
    """

    __test__ = False

    def __init__(
        self,
        pipeline: MigrationPipeline,
        strategy: SubmissionStrategy = SubmissionStrategy.BATCHED,
        section_name: str = DEFAULT_SECTION_NAME,
    ):
        self.pipeline = pipeline
        self.strategy = SubmissionStrategy(strategy)
        self.section_name = section_name

    async def submit(self, run_data: Mapping[str, Any]) -> RunSubmission:
        """
        Submit one test run.

        Args:
            run_data: ``{"executions": [{"name": ...}, ...], "runs": [{"name": ...}]}``

        Returns:
            The created section, case ids aligned with their executions and
            the run response

        Raises:
            ETLError: If the section or the run cannot be created
        """
        executions = list(run_data.get("executions") or [])
        with log_operation(
            logger, "test run submission", context={"executions": len(executions)}
        ) as ctx:
            section = await self._create_section()
            section_id = _response_id(section)
            self.pipeline.update_credentials({"section_id": section_id})
            logger.info(f"Created section {section_id}")

            submission = RunSubmission(section=section)
            cases = []
            for execution in executions:
                name = execution.get("name") if isinstance(execution, Mapping) else None
                if not name:
                    submission.failed_cases.append(str(execution))
                    self.pipeline.error_manager.add_error(
                        ValidationError("Execution without a name", {"execution": str(execution)})
                    )
                    continue
                cases.append({"title": name, "section_id": section_id})

            if self.strategy == SubmissionStrategy.BATCHED:
                responses = await self._create_cases_batched(cases)
            else:
                responses = await self._create_cases_sequential(cases)

            for case, response in zip(cases, responses):
                case_id = _response_id(response)
                if case_id is None:
                    submission.failed_cases.append(case["title"])
                else:
                    submission.case_ids.append(case_id)
            ctx["cases_created"] = len(submission.case_ids)
            logger.info(f"Created {len(submission.case_ids)}/{len(cases)} test cases")

            runs = run_data.get("runs") or []
            run_name = runs[0].get("name") if runs and isinstance(runs[0], Mapping) else None
            run = {
                "name": run_name or DEFAULT_RUN_NAME,
                "case_ids": submission.case_ids,
                "project_id": self.pipeline.auth.get_credential("project_id"),
            }
            submission.run = await self.pipeline.load_to_target("runs", run, "create")
            return submission

    async def _create_section(self) -> dict[str, Any]:
        response = await self.pipeline.load_to_target("sections", {"name": self.section_name}, "create")
        if _response_id(response) is None:
            raise DataError(
                "Section creation returned no id", {"entity": "sections", "response": str(response)}
            )
        return response

    async def _create_cases_batched(self, cases: list[dict[str, Any]]) -> list[Any]:
        outcomes = await self.pipeline.loader.load_records("cases", cases, "create")
        return [outcome.value if outcome.ok else None for outcome in outcomes]

    async def _create_cases_sequential(self, cases: list[dict[str, Any]]) -> list[Any]:
        responses = []
        for case in cases:
            try:
                responses.append(await self.pipeline.load_to_target("cases", case, "create"))
            except FATAL_ERRORS:
                raise
            except ETLError as e:
                logger.warning(f"Failed to create case '{case['title']}': {e.message}")
                responses.append(None)
        return responses
