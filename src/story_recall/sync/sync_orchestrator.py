"""Keep embedding records in step with the cards and summaries they derive from."""

import asyncio
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence, TypeVar

import logfire
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from story_recall.repository.embedding_provider import EmbeddingProvider
from story_recall.repository.embedding_record import EmbeddingRecord
from story_recall.repository.entity_repository import EntityRepository
from story_recall.repository.semantic_errors import (
    TRANSIENT_ERRORS,
    EntityNotFoundError,
    ProviderUnavailableError,
    SchemaMismatchError,
    StoryRecallError,
)
from story_recall.repository.vector_store import VectorStore
from story_recall.schemas.embedding import DocumentRefreshReport, RefreshFailure
from story_recall.schemas.search import EntityKind
from story_recall.services.staleness import is_fresh_digest
from story_recall.services.text_normalizer import content_digest, normalize

T = TypeVar("T")
EntityKey = tuple[EntityKind, str]


class RefreshState(str, Enum):
    PENDING = "pending"
    EMBEDDING = "embedding"
    WRITING = "writing"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class RefreshAttempt:
    """Outcome of one refresh of one entity.

    Attributes:
        kind: Entity kind
        entity_id: Entity id
        novel_id: Owning novel, known once the entity is loaded
        state: Final (or current) state
        error_kind: ``StoryRecallError.kind`` of the failure, if any
        message: Failure or skip reason
        attempts: Number of provider calls made
    """

    kind: EntityKind
    entity_id: str
    novel_id: Optional[str] = None
    state: RefreshState = RefreshState.PENDING
    error_kind: Optional[str] = None
    message: Optional[str] = None
    attempts: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def key(self) -> EntityKey:
        return (self.kind, self.entity_id)

    def finish(self, state: RefreshState, message: Optional[str] = None) -> None:
        self.state = state
        if message is not None:
            self.message = message
        self.finished_at = datetime.now(timezone.utc)


class SyncOrchestrator:
    """Refresh stale embeddings, one entity at a time or a whole novel at once.

    All provider work goes through a single bounded pool. At most one refresh
    per entity runs at a time; a refresh that waited behind another one finds
    the entity fresh and ends ``skipped`` without calling the provider.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        provider: EmbeddingProvider,
        *,
        max_workers: int = 4,
        provider_timeout: float = 10.0,
        retry_delays: Sequence[float] = (0.5, 2.0),
        document_deadline: float = 300.0,
        max_tracked_failures: int = 100,
    ):
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        self.session_maker = session_maker
        self.provider = provider
        self.entity_repository = EntityRepository(session_maker)
        self.provider_timeout = provider_timeout
        self.retry_delays = tuple(retry_delays)
        self.document_deadline = document_deadline

        self._pool = asyncio.Semaphore(max_workers)
        self._entity_locks: dict[EntityKey, asyncio.Lock] = {}
        self._lock_refs: dict[EntityKey, int] = {}
        self._queued: set[EntityKey] = set()
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

        self._failures: OrderedDict[EntityKey, RefreshFailure] = OrderedDict()
        self._max_tracked_failures = max_tracked_failures

    def store_for(self, novel_id: str) -> VectorStore:
        return VectorStore(self.session_maker, novel_id)

    @asynccontextmanager
    async def _entity_lock(self, key: EntityKey) -> AsyncIterator[None]:
        lock = self._entity_locks.get(key)
        if lock is None:
            lock = self._entity_locks[key] = asyncio.Lock()
        self._lock_refs[key] = self._lock_refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_refs[key] -= 1
            if self._lock_refs[key] == 0:
                del self._lock_refs[key]
                del self._entity_locks[key]

    # Failure ledger

    def _record_failure(self, attempt: RefreshAttempt) -> None:
        failure = RefreshFailure(
            kind=attempt.kind,
            entity_id=attempt.entity_id,
            novel_id=attempt.novel_id,
            error_kind=attempt.error_kind or "error",
            message=attempt.message or "",
            attempts=attempt.attempts,
            failed_at=attempt.finished_at or datetime.now(timezone.utc),
        )
        self._failures.pop(attempt.key, None)
        self._failures[attempt.key] = failure
        if len(self._failures) > self._max_tracked_failures:
            (removed_kind, removed_id), _ = self._failures.popitem(last=False)
            logger.debug(f"Evicting oldest refresh failure record: {removed_kind.value} {removed_id}")

    def _clear_failure(self, key: EntityKey) -> None:
        if key in self._failures:
            logger.info(f"Clearing refresh failure for {key[0].value} {key[1]} after success")
            del self._failures[key]

    def recent_failures(self, novel_id: Optional[str] = None) -> list[RefreshFailure]:
        """Most recent failed attempts first, optionally for one novel."""
        failures = reversed(self._failures.values())
        return [f for f in failures if novel_id is None or f.novel_id == novel_id]

    # Single entity

    def schedule_refresh(self, kind: EntityKind, entity_id: str) -> bool:
        """Queue a background refresh and return immediately.

        Returns False only when the orchestrator is shutting down. A request for
        an entity that already has a refresh queued (not yet started) is folded
        into it.
        """
        if self._closed:
            logger.warning(f"Refresh of {kind.value} {entity_id} rejected, orchestrator is closed")
            return False

        key = (EntityKind(kind), entity_id)
        if key in self._queued:
            logger.debug(f"Refresh of {key[0].value} {entity_id} already queued")
            return True

        self._queued.add(key)
        task = asyncio.create_task(self._run_scheduled(key))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run_scheduled(self, key: EntityKey) -> None:
        try:
            await self.refresh_entity(*key)
        except asyncio.CancelledError:
            self._queued.discard(key)
            raise
        except Exception as exc:
            logger.exception(f"Background refresh of {key[0].value} {key[1]} crashed: {exc}")

    async def refresh_entity(self, kind: EntityKind, entity_id: str) -> RefreshAttempt:
        """Refresh one entity if its embedding is missing or stale.

        Failures are reported on the returned attempt, never raised.
        """
        attempt = RefreshAttempt(kind=EntityKind(kind), entity_id=entity_id)
        async with self._entity_lock(attempt.key):
            self._queued.discard(attempt.key)
            async with self._pool:
                await self._process(attempt)
        return attempt

    async def _process(self, attempt: RefreshAttempt) -> None:
        try:
            entity = await self._retry(
                lambda: self.entity_repository.get_entity(attempt.kind, attempt.entity_id)
            )
            if entity is None:
                raise EntityNotFoundError(f"{attempt.kind.value} {attempt.entity_id} not found")
            attempt.novel_id = entity.novel_id

            text_value = normalize(entity)
            digest = content_digest(text_value)
            store = self.store_for(entity.novel_id)
            current = await self._retry(lambda: store.get(attempt.kind, attempt.entity_id))
            if is_fresh_digest(digest, current, model_name=self.provider.model_name):
                attempt.finish(RefreshState.SKIPPED, "embedding is fresh")
                return

            attempt.state = RefreshState.EMBEDDING
            vector = await self._retry(lambda: self._embed(attempt, text_value))

            attempt.state = RefreshState.WRITING
            record = EmbeddingRecord(
                entity_id=attempt.entity_id,
                kind=attempt.kind,
                novel_id=entity.novel_id,
                vector=vector,
                content_digest=digest,
                generated_at=datetime.now(timezone.utc),
                model_name=self.provider.model_name,
            )
            await self._retry(lambda: store.upsert(record))
        except EntityNotFoundError as exc:
            attempt.error_kind = exc.kind
            attempt.finish(RefreshState.SKIPPED, str(exc))
            logger.info(f"Skipping refresh: {exc}")
            return
        except StoryRecallError as exc:
            attempt.error_kind = exc.kind
            attempt.finish(RefreshState.FAILED, str(exc))
            self._record_failure(attempt)
            if isinstance(exc, SchemaMismatchError):
                logger.error(
                    f"Embedding schema mismatch for {attempt.kind.value} {attempt.entity_id}: {exc}"
                )
            else:
                logger.warning(
                    f"Refresh of {attempt.kind.value} {attempt.entity_id} failed "
                    f"({exc.kind}) after {attempt.attempts} attempt(s): {exc}"
                )
            return

        attempt.finish(RefreshState.DONE)
        self._clear_failure(attempt.key)
        logger.debug(f"Refreshed {attempt.kind.value} embedding {attempt.entity_id}")

    async def _embed(self, attempt: RefreshAttempt, text_value: str) -> list[float]:
        attempt.attempts += 1
        try:
            return await asyncio.wait_for(
                self.provider.embed(text_value), timeout=self.provider_timeout
            )
        except asyncio.TimeoutError as exc:
            raise ProviderUnavailableError(
                f"Embedding provider timed out after {self.provider_timeout}s"
            ) from exc

    async def _retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation``, retrying transient failures after each configured delay."""
        for delay in self.retry_delays:
            try:
                return await operation()
            except TRANSIENT_ERRORS as exc:
                logger.debug(f"Transient failure ({exc.kind}), retrying in {delay}s: {exc}")
            await asyncio.sleep(delay)
        return await operation()

    # Whole novel

    @logfire.instrument()
    async def refresh_document(
        self, novel_id: str, deadline: Optional[float] = None
    ) -> DocumentRefreshReport:
        """Refresh every stale card and summary of a novel.

        Entities still running when the deadline passes are cancelled and
        counted as not processed. Partial failure is reported, never raised.

        Raises:
            EntityNotFoundError: if the novel does not exist
        """
        if await self.entity_repository.get_novel(novel_id) is None:
            raise EntityNotFoundError(f"Novel {novel_id} not found")

        deadline = self.document_deadline if deadline is None else deadline
        report = DocumentRefreshReport(novel_id=novel_id)
        store = self.store_for(novel_id)
        tasks: dict[asyncio.Task, EntityKind] = {}

        for kind in EntityKind:
            candidates = await store.scan(kind)
            counts = report.counts_for(kind)
            counts.total = len(candidates)
            for candidate in candidates:
                if is_fresh_digest(
                    candidate.content_digest, candidate.record, model_name=self.provider.model_name
                ):
                    continue
                counts.stale += 1
                task = asyncio.create_task(self.refresh_entity(kind, candidate.entity_id))
                tasks[task] = kind

        logger.info(
            f"Refreshing novel {novel_id}: {report.cards.stale}/{report.cards.total} cards, "
            f"{report.summaries.stale}/{report.summaries.total} summaries stale"
        )
        if not tasks:
            return report

        done, pending = await asyncio.wait(tasks.keys(), timeout=deadline)
        if pending:
            report.deadline_exceeded = True
            for task in pending:
                task.cancel()
                report.counts_for(tasks[task]).not_processed += 1
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                f"Refresh of novel {novel_id} hit its {deadline}s deadline, "
                f"{len(pending)} entities not processed"
            )

        for task in done:
            counts = report.counts_for(tasks[task])
            exc = task.exception()
            if exc is not None:
                logger.error(f"Refresh task crashed: {exc}")
                counts.failed += 1
                continue
            attempt: RefreshAttempt = task.result()
            if attempt.state == RefreshState.DONE:
                counts.updated += 1
            elif attempt.state == RefreshState.FAILED:
                counts.failed += 1

        logger.info(
            f"Refreshed novel {novel_id}: cards {report.cards.updated} updated "
            f"{report.cards.failed} failed, summaries {report.summaries.updated} updated "
            f"{report.summaries.failed} failed"
        )
        return report

    # Lifecycle

    async def drain(self) -> None:
        """Wait until every scheduled refresh has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop accepting work and cancel scheduled refreshes."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Sync orchestrator stopped, cancelled {len(tasks)} pending refreshes")
