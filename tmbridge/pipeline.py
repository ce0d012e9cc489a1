"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Migration pipeline orchestrating extraction, transformation and loading.

One ``MigrationPipeline`` owns everything a run mutates: the error log, the
throttle windows of both directions and the credential map. Nothing is shared
between pipeline instances.
"""

import json
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tmbridge.auth import AuthenticationProvider
from tmbridge.config_manager import ConfigurationManager
from tmbridge.core.config import ExecutorConfig, get_app_config
from tmbridge.core.logging import correlation_id, get_logger, log_operation
from tmbridge.errors import (
    FATAL_ERRORS,
    ConfigurationError,
    ErrorManager,
    ETLError,
    ETLErrorType,
)
from tmbridge.executor import ThrottledBatchExecutor
from tmbridge.extractor import DataExtractor, ExtractionResult
from tmbridge.http_client import HttpClient, RequestsHttpClient
from tmbridge.loader import DataLoader, LoadingResult
from tmbridge.models import MigrationConfig
from tmbridge.transformer import DataTransformer, FieldMapping, TransformationResult

logger = get_logger("tmbridge.pipeline")


@dataclass
class MigrationResult:
    """Outcome of one pipeline run."""

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    extraction: ExtractionResult | None = None
    transformation: TransformationResult | None = None
    loading: LoadingResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "errors": self.errors,
            "warnings": self.warnings,
            "metadata": self.metadata,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class MigrationPipeline:
    """
    Runs a migration described by one config document.

    In strict mode a setup failure is raised as its typed error. Otherwise it
    is recorded and the pipeline is left degraded: ``execute`` then returns a
    failed result without touching the network.

    Args:
        config: The config document or a validated model
        credentials: Flat credential map
        base_url: Host prepended to the config's base path
        http_client: Transport, a ``RequestsHttpClient`` by default
        executor_config: Executor limits, the app settings' by default
        strict: Raise setup errors instead of degrading, the app settings' by default
        clock: Time source for the throttle windows
        sleep: Coroutine used by the executors for every wait
    """

    def __init__(
        self,
        config: dict[str, Any] | MigrationConfig,
        credentials: dict[str, Any] | None = None,
        *,
        base_url: str | None = None,
        http_client: HttpClient | None = None,
        executor_config: ExecutorConfig | None = None,
        strict: bool | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        app_config = get_app_config()
        self.strict = app_config.strict if strict is None else strict
        self.error_manager = ErrorManager()
        self.executor_config = executor_config or app_config.executor
        self._owns_client = http_client is None
        self.http_client = http_client or RequestsHttpClient(timeout=self.executor_config.timeout)
        self.field_mappings: list[FieldMapping] = []
        self.degraded = False
        self._offsets: dict[str, int] = {}
        self._timing = {k: v for k, v in (("clock", clock), ("sleep", sleep)) if v is not None}

        self.config_manager: ConfigurationManager | None = None
        self.auth = AuthenticationProvider(credentials)
        try:
            self.config_manager = ConfigurationManager(config, credentials, base_url)
            self.auth.initialize(self.config_manager.config.auth)
        except ETLError as e:
            logger.error(f"Pipeline setup failed: {e.message}", exc_info=True)
            if self.strict:
                raise
            self.error_manager.add_error(e)
            self.degraded = True
            return

        self._build_components()
        logger.info(
            f"Pipeline ready for '{self.integration_name}' "
            f"(source rate {self.source_executor.rate_cap}/s, target rate {self.target_executor.rate_cap}/s)"
        )

    def _build_components(self) -> None:
        rate_cap = self.config.requests_per_second
        self.source_executor = ThrottledBatchExecutor.from_config(
            "source", self.executor_config, rate_cap, **self._timing
        )
        self.target_executor = ThrottledBatchExecutor.from_config(
            "target", self.executor_config, rate_cap, **self._timing
        )
        self.extractor = DataExtractor(
            self.config_manager, self.http_client, self.auth, self.source_executor, self.error_manager
        )
        self.transformer = DataTransformer(self.config, self.error_manager)
        self.transformer.add_field_mappings(self.field_mappings)
        self.loader = DataLoader(
            self.config_manager, self.http_client, self.auth, self.target_executor, self.error_manager
        )

    @property
    def config(self) -> MigrationConfig:
        return self.config_manager.config

    @property
    def integration_name(self) -> str:
        return self.config_manager.integration_name if self.config_manager else "unknown"

    def offsets(self) -> dict[str, int]:
        """Records extracted per entity by the last extraction."""
        return dict(self._offsets)

    async def execute(
        self,
        data: Mapping[str, Any] | None = None,
        ids: Mapping[str, Sequence[Any]] | None = None,
    ) -> MigrationResult:
        """
        Run the pipeline.

        Args:
            data: Records to transform and load; extraction runs when omitted
            ids: Entity name to ids, restricting extraction to ``get`` mode

        Returns:
            The run result; configuration and authentication failures stop
            the run and are reported in it rather than raised
        """
        start_time = datetime.now()
        extraction = transformation = loading = None

        with correlation_id() as run_id:
            if self.degraded:
                logger.error("Pipeline is degraded, skipping execution")
                return self._result(start_time, run_id, None, None, None)

            try:
                if data is None:
                    extraction = await self.extract(ids)
                    data = extraction.data
                transformation = self.transform(data)
                loading = await self.load(transformation.data)
            except FATAL_ERRORS as e:
                logger.error(f"Migration stopped: {e.formatted_message}")
                self.error_manager.add_error(e)
            except ETLError as e:
                logger.error(f"Migration failed: {e.formatted_message}")
                self.error_manager.add_error(e)
            except Exception as e:
                logger.error(f"Unexpected migration failure: {e}", exc_info=True)
                self.error_manager.record(e, ETLErrorType.UNKNOWN, {"operation": "execute"})

            return self._result(start_time, run_id, extraction, transformation, loading)

    def _result(
        self,
        start_time: datetime,
        run_id: str,
        extraction: ExtractionResult | None,
        transformation: TransformationResult | None,
        loading: LoadingResult | None,
    ) -> MigrationResult:
        end_time = datetime.now()
        warnings: list[str] = []
        if extraction is not None:
            warnings.extend(extraction.metadata.get("warnings", []))
        if transformation is not None:
            warnings.extend(transformation.metadata.get("warnings", []))

        data = transformation.data if transformation is not None else {}
        records = sum(len(v) for k, v in data.items() if k != "source" and isinstance(v, list))
        success = not self.degraded and not self.error_manager.has_critical_errors()

        result = MigrationResult(
            success=success,
            data=data,
            errors=self.error_manager.to_list(),
            warnings=warnings,
            metadata={
                "start_time": start_time.isoformat(),
                "end_time": end_time.isoformat(),
                "duration": (end_time - start_time).total_seconds(),
                "records_processed": records,
                "integration": self.integration_name,
                "source": data.get("source") or self.integration_name,
                "correlation_id": run_id,
            },
            extraction=extraction,
            transformation=transformation,
            loading=loading,
        )
        level = "succeeded" if success else "failed"
        logger.info(f"Migration {level}: {records} records, {len(result.errors)} errors")
        return result

    async def extract(self, ids: Mapping[str, Sequence[Any]] | None = None) -> ExtractionResult:
        """Extract source records and remember per-entity counts."""
        with log_operation(logger, "extraction", context={"integration": self.integration_name}) as ctx:
            result = await self.extractor.extract(ids)
            ctx["record_counts"] = result.metadata["record_counts"]
        self._offsets = dict(result.metadata["record_counts"])
        return result

    def transform(self, data: Mapping[str, Any]) -> TransformationResult:
        with log_operation(logger, "transformation", context={"integration": self.integration_name}):
            return self.transformer.transform(data)

    async def load(self, data: Mapping[str, Any]) -> LoadingResult:
        with log_operation(logger, "loading", context={"integration": self.integration_name}) as ctx:
            result = await self.loader.load(data)
            ctx["failed_requests"] = result.metadata["failed_requests"]
        return result

    async def load_to_target(
        self,
        target_type: str,
        record: Mapping[str, Any],
        operation: str = "create",
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """Send one record directly; failures are recorded and raised."""
        try:
            return await self.loader.load_to_target(target_type, record, operation, params)
        except ETLError as e:
            self.error_manager.record(e, ETLErrorType.NETWORK, {"entity": target_type})
            raise

    def update_credentials(self, credentials: dict[str, Any]) -> None:
        """
        Merge credentials, re-resolve the config and re-initialize auth.

        Raises:
            ConfigurationError: If the pipeline is degraded or the auth config
                becomes invalid
        """
        if self.degraded:
            raise ConfigurationError("Cannot update credentials of a degraded pipeline")
        self.config_manager.update_credentials(credentials)
        self.auth.update_credentials(credentials)
        self.auth.initialize(self.config.auth)
        self.transformer.config = self.config
        logger.debug(f"Pipeline credentials updated: {sorted(credentials)}")

    def add_field_mappings(self, mappings: list[FieldMapping]) -> None:
        self.field_mappings.extend(mappings)
        if not self.degraded:
            self.transformer.add_field_mappings(mappings)

    def get_error_summary(self) -> dict[str, Any]:
        return self.error_manager.get_error_summary()

    def has_critical_errors(self) -> bool:
        return self.error_manager.has_critical_errors()

    def get_config_info(self) -> dict[str, Any]:
        """Describe the loaded config without exposing credentials."""
        if self.config_manager is None:
            return {"integration": "unknown", "degraded": True}
        config = self.config
        return {
            "integration": self.integration_name,
            "type": config.type.value,
            "base_url": config.base_url,
            "base_path": config.base_path,
            "auth_type": config.auth.type.value if config.auth else None,
            "source_entities": sorted(config.source),
            "target_entities": sorted(config.target),
            "multi_target": config.multi_target is not None,
            "requests_per_second": (
                None if self.degraded else self.source_executor.rate_cap
            ),
            "degraded": self.degraded,
        }

    def close(self) -> None:
        """Close the HTTP client if the pipeline created it."""
        if self._owns_client:
            self.http_client.close()
            self._owns_client = False

    async def __aenter__(self) -> "MigrationPipeline":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def reset(self) -> None:
        """Clear errors and offsets and start new throttle windows."""
        self.error_manager.clear()
        self._offsets = {}
        if not self.degraded:
            self._build_components()
