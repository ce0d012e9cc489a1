"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Extraction of records from the source system.

Entities are fetched in dependency order so that a path such as
``/projects/{projects.id}/suites`` can be expanded from the projects already
extracted. Every request goes through the source executor; pagination is done
in rounds so that each page is throttled like any other request.
"""

import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tmbridge.auth import AuthenticationProvider
from tmbridge.config_manager import ConfigurationManager
from tmbridge.core.logging import get_logger
from tmbridge.dependency import DependencyOrderResolver
from tmbridge.errors import (
    FATAL_ERRORS,
    DataError,
    ErrorManager,
    ETLError,
    ETLErrorType,
)
from tmbridge.executor import ThrottledBatchExecutor, first_failure
from tmbridge.http_client import HttpClient, HttpResponse
from tmbridge.models import (
    FALLBACK_DATA_KEYS,
    Cutoff,
    IndexOperation,
    LimitPolicy,
    LimitType,
    PagingConfig,
)
from tmbridge.url_template import UrlTemplateEngine, join_url, lookup, placeholders

logger = get_logger("tmbridge.extractor")

DEFAULT_HEADERS = {"Accept": "application/json"}


@dataclass
class ExtractionResult:
    """Records per entity plus run metadata."""

    data: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


def unwrap_records(body: Any, data_key: str | None = None) -> list[Any]:
    """
    Pull the record list out of a response body.

    ``data_key`` wins when present; otherwise the usual envelope keys are
    tried, then the body itself. A single object becomes a one-element list.
    """
    value = body
    if isinstance(body, Mapping):
        if data_key and lookup(body, data_key) is not None:
            value = lookup(body, data_key)
        else:
            for key in FALLBACK_DATA_KEYS:
                if key in body:
                    value = body[key]
                    break

    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, Mapping):
        return [value]
    logger.warning(f"Ignoring non-record response body of type {type(value).__name__}")
    return []


def apply_limit(
    limit: LimitPolicy | None, records: list[Any], total: int
) -> tuple[list[Any], bool]:
    """
    Apply a limit policy to one page.

    Args:
        limit: The policy, or None
        records: Records of the page
        total: Records already kept for the entity

    Returns:
        The records to keep and whether paging must stop
    """
    if limit is None:
        return records, False

    if limit.type == LimitType.COUNT:
        remaining = int(limit.value) - total
        if len(records) < remaining:
            return records, False
        if limit.cutoff == Cutoff.HARD:
            return records[: max(remaining, 0)], True
        return records, True

    for position, record in enumerate(records):
        value = lookup(record, limit.match_field) if isinstance(record, Mapping) else None
        if value is not None and str(value) == limit.match_value:
            if limit.cutoff == Cutoff.HARD:
                return records[:position], True
            return records, True
    return records, False


def stamp_source_id(records: Sequence[Any], id_field: str = "id") -> list[Any]:
    """Copy ``id_field`` into ``source_id`` on records that have none."""
    stamped = []
    for record in records:
        if isinstance(record, Mapping) and "source_id" not in record:
            value = lookup(record, id_field)
            if value is not None:
                record = {**record, "source_id": value}
        stamped.append(record)
    return stamped


class DataExtractor:
    """
    Fetches source records for every configured entity.

    Args:
        config_manager: Source of the effective config
        http_client: Transport
        auth: Source authentication
        executor: Source executor
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
        self._run_errors: list[ETLError] = []
        self._warnings: list[str] = []
        self._endpoints: dict[str, list[str]] = {}

    @property
    def config(self):
        return self.config_manager.config

    def _engine(self) -> UrlTemplateEngine:
        return UrlTemplateEngine(
            default_field="source_id", denormalized_keys=self.config.denormalized_keys, strict=True
        )

    def _url(self, path: str) -> str:
        return join_url(self.config.base_url, self.config.base_path, path)

    def _record_error(self, error: BaseException, context: dict[str, Any]) -> ETLError:
        recorded = self.error_manager.record(error, ETLErrorType.NETWORK, context)
        self._run_errors.append(recorded)
        return recorded

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self._warnings.append(message)

    async def extract(self, ids: Mapping[str, Sequence[Any]] | None = None) -> ExtractionResult:
        """
        Extract source records.

        Args:
            ids: Entity name to ids (or id objects) for ``get`` mode; index
                mode over every entity when omitted

        Returns:
            Records per entity and extraction metadata

        Raises:
            ConfigurationError: On invalid templates or dependency cycles
            AuthenticationError: When the source rejects the credentials
        """
        start_time = time.time()
        self._run_errors = []
        self._warnings = []
        self._endpoints = {}

        if ids:
            data = await self._extract_by_id(ids)
            mode = "get"
        else:
            data = await self._extract_index()
            mode = "index"

        duration = time.time() - start_time
        counts = {entity: len(records) for entity, records in data.items()}
        logger.info(
            f"Extracted {sum(counts.values())} records from {len(data)} entities in {duration:.2f}s"
        )
        return ExtractionResult(
            data=data,
            metadata={
                "extracted_at": datetime.now().isoformat(),
                "duration": duration,
                "mode": mode,
                "record_counts": counts,
                "endpoints": self._endpoints,
                "errors": [e.to_dict() for e in self._run_errors],
                "warnings": list(self._warnings),
            },
        )

    async def _extract_index(self) -> dict[str, list[dict[str, Any]]]:
        source = self.config.source
        paths = {
            name: entity.endpoints.index.path
            for name, entity in source.items()
            if entity.endpoints.index is not None
        }
        skipped = sorted(set(source) - set(paths))
        if skipped:
            logger.debug(f"Entities without an index operation: {skipped}")

        order = DependencyOrderResolver(paths, "index").resolve_all()
        logger.info(f"Extraction order: {' -> '.join(order)}")

        engine = self._engine()
        records: dict[str, list[dict[str, Any]]] = {}
        for entity in order:
            operation = source[entity].endpoints.index
            referenced = {t.entity for t in placeholders(operation.path) if t.entity in paths}
            empty = sorted(r for r in referenced if r != entity and not records.get(r))
            if empty:
                self._record_error(
                    DataError(
                        f"Skipping '{entity}': no records extracted for {', '.join(empty)}",
                        {"entity": entity, "operation": "index", "missing": empty},
                    ),
                    {"entity": entity},
                )
                logger.warning(f"Skipping '{entity}': no data for {', '.join(empty)}")
                continue

            expansion = engine.expand(operation.path, records, endpoint=entity)
            for warning in expansion.warnings:
                self._warn(warning)

            urls = [self._url(u) for u in expansion.urls]
            self._endpoints[entity] = urls
            logger.debug(f"Extracting '{entity}' from {len(urls)} URL(s)")
            records[entity] = await self._fetch_index(entity, operation, urls)

        return records

    async def _extract_by_id(
        self, ids: Mapping[str, Sequence[Any]]
    ) -> dict[str, list[dict[str, Any]]]:
        engine = self._engine()
        records: dict[str, list[dict[str, Any]]] = {}
        for entity, entity_ids in ids.items():
            config = self.config.source.get(entity)
            operation = config.endpoints.get if config is not None else None
            if operation is None:
                self._record_error(
                    DataError(
                        f"No get operation configured for source entity '{entity}'",
                        {"entity": entity, "operation": "get"},
                    ),
                    {},
                )
                continue

            id_records = [i if isinstance(i, Mapping) else {"id": i} for i in entity_ids]
            expansion = engine.expand_ids(operation.path, id_records)
            for warning in expansion.warnings:
                self._warn(warning)

            urls = [self._url(u) for u in expansion.urls]
            self._endpoints[entity] = urls
            id_field = config.endpoints.index.id_field if config.endpoints.index else "id"
            outcomes = await self.executor.run(urls, self._get, abort_on=FATAL_ERRORS)
            fatal = first_failure(outcomes, FATAL_ERRORS)
            if fatal is not None:
                self._handle_failure(fatal.error, entity, "get", fatal.item)

            fetched: list[dict[str, Any]] = []
            for url, outcome in zip(urls, outcomes):
                if not outcome.ok:
                    self._handle_failure(outcome.error, entity, "get", url)
                    continue
                page = unwrap_records(outcome.value.body, operation.data_key)
                fetched.extend(stamp_source_id(page, id_field))
            records[entity] = fetched

        return records

    async def _fetch_index(
        self, entity: str, operation: IndexOperation, urls: list[str]
    ) -> list[dict[str, Any]]:
        paging: PagingConfig = operation.paging or self.config.paging
        chains: list[list[Any]] = [[] for _ in urls]
        pages = [0] * len(urls)
        active = list(enumerate(urls))
        total = 0
        stopped = False

        while active and not stopped:
            outcomes = await self.executor.run(
                [url for _, url in active], self._get, abort_on=FATAL_ERRORS
            )
            fatal = first_failure(outcomes, FATAL_ERRORS)
            if fatal is not None:
                self._handle_failure(fatal.error, entity, "index", fatal.item)
            next_active: list[tuple[int, str]] = []

            for (chain, url), outcome in zip(active, outcomes):
                if not outcome.ok:
                    self._handle_failure(outcome.error, entity, "index", url)
                    continue

                body = outcome.value.body
                pages[chain] += 1
                page, reached = apply_limit(
                    operation.limit, unwrap_records(body, operation.data_key), total
                )
                page = stamp_source_id(page, operation.id_field)
                chains[chain].extend(page)
                total += len(page)
                if reached:
                    logger.info(f"Limit reached for '{entity}' after {total} records")
                    stopped = True
                    break

                link = self._next_link(body, paging)
                if link is None:
                    continue
                if pages[chain] >= paging.max_pages:
                    self._warn(f"Stopped paging '{entity}' at {paging.max_pages} pages for {urls[chain]}")
                    continue
                next_active.append((chain, link))

            active = next_active

        return [record for chain in chains for record in chain]

    def _next_link(self, body: Any, paging: PagingConfig) -> str | None:
        if paging.location != "response" or not isinstance(body, Mapping):
            return None
        link = lookup(body, paging.link_key)
        if not link or not isinstance(link, str):
            return None
        if link.startswith(("http://", "https://")):
            return link
        return join_url(self.config.base_url, link)

    def _handle_failure(self, error: ETLError | None, entity: str, operation: str, url: str) -> None:
        if error is None:
            return
        context = {"entity": entity, "operation": operation, "url": url, "direction": "source"}
        if isinstance(error, FATAL_ERRORS):
            logger.error(f"Fatal error extracting '{entity}': {error.message}", exc_info=error)
            error.context.update({k: v for k, v in context.items() if k not in error.context})
            raise error
        logger.error(f"Failed to extract '{entity}' from {url}: {error.message}")
        self._record_error(error, context)

    async def _get(self, url: str) -> HttpResponse:
        request = self.auth.apply(headers=DEFAULT_HEADERS)
        return await self.http_client.get(url, headers=request.headers, params=request.params or None)
