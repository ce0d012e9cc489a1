"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Loading of transformed records into the target system.

Each record takes the update path when it carries its entity's update key and
the create path otherwise. Creates are sent one request per record, in one
bulk payload per entity, or, with a multi-target endpoint, merged with every
other entity into a single request. All requests go through the target
executor.
"""

import os
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tmbridge.auth import AuthenticationProvider
from tmbridge.config_manager import ConfigurationManager
from tmbridge.core.logging import get_logger
from tmbridge.errors import (
    FATAL_ERRORS,
    ConfigurationError,
    DataError,
    ErrorManager,
    ETLError,
    ETLErrorType,
    ValidationError,
)
from tmbridge.executor import Outcome, ThrottledBatchExecutor, first_failure
from tmbridge.http_client import HttpClient
from tmbridge.models import CreateOperation, EntityConfig, UpdateOperation
from tmbridge.url_template import UrlTemplateEngine, join_url, lookup

logger = get_logger("tmbridge.loader")

DEFAULT_HEADERS = {"Accept": "application/json"}
DEFAULT_DATA_KEY = "data"
MULTI_TARGET = "multi_target"


@dataclass
class LoadRequest:
    """One POST to the target."""

    entity: str
    operation: str
    url: str
    body: Any = None
    files: dict[str, str] | None = None
    record_count: int = 1


@dataclass
class LoadingResult:
    """Target responses per entity, in submission order, plus run metadata."""

    responses: dict[str, list[Any]] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


class DataLoader:
    """
    Sends records to the target system.

    Args:
        config_manager: Source of the effective config
        http_client: Transport
        auth: Target authentication
        executor: Target executor
        error_manager: Shared error log
    """

    def __init__(
        self,
        config_manager: ConfigurationManager,
        http_client: HttpClient,
        auth: AuthenticationProvider,
        executor: ThrottledBatchExecutor,
        error_manager: ErrorManager,
    ):
        self.config_manager = config_manager
        self.http_client = http_client
        self.auth = auth
        self.executor = executor
        self.error_manager = error_manager
        self._engine = UrlTemplateEngine(default_field="source_id", strict=True)

    @property
    def config(self):
        return self.config_manager.config

    def build_url(self, path: str, values: Mapping[str, Any] | None = None) -> str:
        """
        Substitute a target path and prefix it with the base URL.

        Raises:
            ConfigurationError: If placeholders remain
        """
        if values:
            path = self._engine.substitute(path, values, strict=True)
        else:
            path = self._engine.assert_resolved(path)
        return join_url(self.config.base_url, self.config.base_path, path)

    def _source_name(self, data: Mapping[str, Any] | None = None) -> str:
        if data and data.get("source"):
            return str(data["source"])
        return self.config.name

    def _record_url(self, path: str, record: Mapping[str, Any], entity: str, operation: str) -> str:
        try:
            return self.build_url(path, record)
        except ConfigurationError as e:
            raise ValidationError(
                f"Record for {entity} {operation} lacks values for {path}",
                {"entity": entity, "operation": operation, "path": path, **e.context},
            ) from e

    def _update_request(
        self,
        entity: str,
        operation: UpdateOperation,
        record: Mapping[str, Any],
        source: str,
    ) -> LoadRequest:
        missing = [k for k in operation.required_keys if lookup(record, k) is None]
        if missing:
            raise ValidationError(
                f"Update record for {entity} is missing required keys: {', '.join(missing)}",
                {"entity": entity, "operation": "update", "missing": missing},
            )
        url = self._record_url(operation.path, record, entity, "update")
        body = dict(record)
        if operation.include_source:
            body["source"] = source
        return LoadRequest(entity, "update", url, body)

    def _create_request(
        self,
        entity: str,
        operation: CreateOperation,
        record: Mapping[str, Any],
        source: str,
        params: Mapping[str, Any] | None = None,
    ) -> LoadRequest:
        path = operation.single_path or operation.path or operation.bulk_path
        if params is not None:
            url = self.build_url(path, params)
        else:
            url = self._record_url(path, record, entity, "create")

        body = dict(record)
        if operation.include_source:
            body["source"] = source

        files = None
        if operation.payload_key:
            file_path = body.get(operation.payload_key)
            if isinstance(file_path, str) and os.path.isfile(file_path):
                files = {operation.payload_key: file_path}
                del body[operation.payload_key]
        return LoadRequest(entity, "create", url, body, files)

    def _request_for(
        self,
        entity: str,
        entity_config: EntityConfig,
        record: Mapping[str, Any],
        operation: str,
        source: str,
        params: Mapping[str, Any] | None = None,
    ) -> LoadRequest:
        endpoints = entity_config.endpoints
        if operation == "update" and endpoints.update is not None:
            return self._update_request(entity, endpoints.update, {**record, **(params or {})}, source)
        if operation == "create" and endpoints.create is not None:
            return self._create_request(entity, endpoints.create, record, source, params)
        raise ConfigurationError(
            f"No {operation} operation configured for target entity '{entity}'",
            {"entity": entity, "operation": operation},
        )

    def _target_config(self, entity: str) -> EntityConfig:
        entity_config = self.config.target.get(entity)
        if entity_config is None:
            raise DataError(
                f"No target configuration for entity '{entity}'",
                {"entity": entity, "direction": "target"},
            )
        return entity_config

    def _plan(self, data: Mapping[str, Any]) -> list[LoadRequest]:
        source = self._source_name(data)
        multi_target = self.config.multi_target
        requests: list[LoadRequest] = []
        deferred: dict[str, list[Any]] = {}

        for entity, records in data.items():
            if entity == "source":
                continue
            try:
                entity_config = self._target_config(entity)
            except DataError as e:
                logger.warning(f"Skipping '{entity}': {e.message}")
                self.error_manager.add_error(e)
                continue

            if isinstance(records, Mapping):
                records = [records]
            endpoints = entity_config.endpoints
            bulk: list[Any] = []

            for position, record in enumerate(records):
                try:
                    update = endpoints.update
                    if update is not None and lookup(record, update.update_key):
                        requests.append(self._update_request(entity, update, record, source))
                    elif multi_target is not None:
                        deferred.setdefault(entity, []).append(record)
                    elif endpoints.create is None:
                        raise DataError(
                            f"No create operation configured for target entity '{entity}'",
                            {"entity": entity, "operation": "create"},
                        )
                    elif endpoints.create.bulk_path:
                        bulk.append(record)
                    else:
                        requests.append(self._create_request(entity, endpoints.create, record, source))
                except (ValidationError, DataError) as e:
                    e.context.setdefault("index", position)
                    logger.warning(f"Skipping {entity} record {position}: {e.message}")
                    self.error_manager.add_error(e)

            if bulk:
                create = endpoints.create
                body: dict[str, Any] = {create.data_key or DEFAULT_DATA_KEY: bulk}
                if create.include_source:
                    body["source"] = source
                requests.append(
                    LoadRequest(entity, "create", self.build_url(create.bulk_path), body, None, len(bulk))
                )

        if deferred:
            tagged = [
                {**record, multi_target.type_key: entity}
                for entity, records in deferred.items()
                for record in records
            ]
            body = {multi_target.data_key: tagged}
            if multi_target.include_source:
                body["source"] = source
            requests.append(
                LoadRequest(MULTI_TARGET, "create", self.build_url(multi_target.path), body, None, len(tagged))
            )
            logger.info(
                f"Merged {len(tagged)} records of {len(deferred)} entities into one multi-target request"
            )

        return requests

    async def load(self, data: Mapping[str, Any]) -> LoadingResult:
        """
        Load every entity of ``data``.

        Args:
            data: Entity name to records; the ``source`` key names the origin

        Returns:
            Responses per entity and loading metadata

        Raises:
            ConfigurationError: If a bulk or multi-target path cannot be resolved
            AuthenticationError: If the target rejects the credentials; no
                further requests are sent
        """
        start_time = time.time()
        requests = self._plan(data)
        outcomes = await self.executor.run(requests, self._send, abort_on=FATAL_ERRORS)
        self._raise_fatal(outcomes)

        responses: dict[str, list[Any]] = {}
        endpoints: dict[str, list[str]] = {}
        counts: dict[str, int] = {}
        for request, outcome in zip(requests, outcomes):
            endpoints.setdefault(request.entity, []).append(request.url)
            if outcome.ok:
                responses.setdefault(request.entity, []).append(outcome.value)
                counts[request.entity] = counts.get(request.entity, 0) + request.record_count
            else:
                self._record_failure(outcome.error, request)

        successful = sum(1 for o in outcomes if o.ok)
        duration = time.time() - start_time
        logger.info(f"Loaded {successful}/{len(requests)} requests in {duration:.2f}s")
        return LoadingResult(
            responses=responses,
            metadata={
                "loaded_at": datetime.now().isoformat(),
                "duration": duration,
                "total_requests": len(requests),
                "successful_requests": successful,
                "failed_requests": len(requests) - successful,
                "record_counts": counts,
                "endpoints": endpoints,
            },
        )

    async def load_to_target(
        self,
        target_type: str,
        record: Mapping[str, Any],
        operation: str = "create",
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """
        Send one record directly, outside of a full load.

        Args:
            target_type: Target entity name
            record: The request body
            operation: ``create`` or ``update``
            params: Values for the path placeholders

        Returns:
            The response body

        Raises:
            ETLError: The typed error of the request
        """
        entity_config = self._target_config(target_type)
        request = self._request_for(
            target_type, entity_config, record, operation, self._source_name(), params or {}
        )
        try:
            return await self.executor.call(lambda: self._send(request))
        except ETLError as e:
            logger.error(f"Failed to {operation} {target_type} at {request.url}: {e.message}")
            raise

    async def load_records(
        self,
        target_type: str,
        records: Sequence[Mapping[str, Any]],
        operation: str = "create",
    ) -> list[Outcome]:
        """
        Send records one request each through the executor.

        Returns:
            One outcome per record, in input order; the value is the response body

        Raises:
            AuthenticationError: Recorded once, after which nothing more is sent
        """
        entity_config = self._target_config(target_type)
        source = self._source_name()

        outcomes: list[Outcome] = []
        requests: list[LoadRequest] = []
        positions: list[int] = []
        for position, record in enumerate(records):
            outcome = Outcome(position, record)
            try:
                requests.append(
                    self._request_for(target_type, entity_config, record, operation, source)
                )
                positions.append(position)
            except ValidationError as e:
                e.context.setdefault("index", position)
                self.error_manager.add_error(e)
                outcome.mark_failed(e)
            outcomes.append(outcome)

        sent = await self.executor.run(requests, self._send, abort_on=FATAL_ERRORS)
        self._raise_fatal(sent, record=True)
        for position, request, result in zip(positions, requests, sent):
            if not result.ok:
                self._record_failure(result.error, request)
            result.index = position
            result.item = records[position]
            outcomes[position] = result
        return outcomes

    def _raise_fatal(self, outcomes: Sequence[Outcome], record: bool = False) -> None:
        fatal = first_failure(outcomes, FATAL_ERRORS)
        if fatal is None:
            return
        request: LoadRequest = fatal.item
        error = fatal.error
        context = {
            "entity": request.entity,
            "operation": request.operation,
            "url": request.url,
            "direction": "target",
        }
        error.context.update({k: v for k, v in context.items() if k not in error.context})
        logger.error(f"Fatal error loading '{request.entity}': {error.message}")
        if record:
            self.error_manager.add_error(error)
        raise error

    def _record_failure(self, error: ETLError | None, request: LoadRequest) -> None:
        if error is None:
            return
        logger.error(
            f"Failed to {request.operation} {request.entity} at {request.url}: {error.message}"
        )
        self.error_manager.record(
            error,
            ETLErrorType.NETWORK,
            {"entity": request.entity, "operation": request.operation, "url": request.url},
        )

    async def _send(self, request: LoadRequest) -> Any:
        body = request.body if isinstance(request.body, dict) else None
        auth = self.auth.apply(headers=DEFAULT_HEADERS, body=body)
        payload = auth.body if body is not None else request.body
        response = await self.http_client.post(
            request.url,
            headers=auth.headers,
            body=payload,
            files=request.files,
            params=auth.params or None,
        )
        return response.body
