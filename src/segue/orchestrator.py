"""Generation orchestration: fingerprint, cache, submit, poll, store, chain.

Flow for one request::

    normalize duration → fingerprint → cache.begin_or_join
      hit    → cached path
      joined → await the creator's outcome
      miss   → submit → journal → poll → download → cache.store

Chains run their elements strictly in order; element N+1 is built only once
element N's artifact (and, when continuity is on, its seed) exists.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import replace
import logging
import math
from typing import TYPE_CHECKING

from segue.auth import CredentialCache, JWTSigner, StaticKeySigner
from segue.cache import AlreadyComplete, AlreadyInProgress, ResultCache, Started
from segue.continuity import ContinuityBridge
from segue.credentials import EnvKeyStore, SupabaseKeyStore
from segue.errors import (
    APIError,
    ConfigurationError,
    GenerationFailedError,
    InternalError,
    PermanentError,
)
from segue.fingerprint import compute_fingerprint
from segue.journal import TaskJournal
from segue.models import TaskStatus
from segue.poll import PollLoop, notify_observer
from segue.policy import DemoBilling, NoBilling
from segue.providers import KlingAdapter, MockAdapter, PolloAdapter
from segue.storage import LocalArtifactStore
from segue.telemetry import Telemetry
from segue.transport import RetryingTransport

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
    from pathlib import Path

    import httpx

    from segue.cache import WorkToken
    from segue.config import Config
    from segue.continuity import FrameExtractor
    from segue.credentials import CredentialStore
    from segue.models import CacheEntry, GenerationRequest, TaskHandle
    from segue.policy import BillingPolicy
    from segue.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)


class Orchestrator:
    """Provider-agnostic submit/poll/result contract with caching and chaining.

    The orchestrator exclusively owns the fingerprint → entry map (through
    its ``ResultCache``) and every ``TaskHandle`` it creates. Collaborators are
    injected; :meth:`from_config` wires the defaults.
    """

    def __init__(
        self,
        adapters: Mapping[str, ProviderAdapter],
        *,
        default_provider: str,
        cache: ResultCache,
        journal: TaskJournal | None = None,
        continuity: ContinuityBridge | None = None,
        poll_loop: PollLoop | None = None,
        billing: BillingPolicy | None = None,
        credentials: CredentialCache | None = None,
        telemetry: Telemetry | None = None,
        request_concurrency: int = 4,
        transport: RetryingTransport | None = None,
    ) -> None:
        if request_concurrency < 1:
            raise ConfigurationError(
                f"request_concurrency must be ≥ 1, got {request_concurrency}"
            )
        self._adapters = dict(adapters)
        self._default_provider = default_provider
        self.cache = cache
        self.journal = journal
        self.continuity = continuity or ContinuityBridge(telemetry=telemetry)
        self._poll = poll_loop or PollLoop(telemetry=telemetry)
        self._billing = billing or NoBilling()
        self.credentials = credentials or CredentialCache()
        self._telemetry = telemetry or Telemetry()
        self._semaphore = asyncio.Semaphore(request_concurrency)
        self._transport = transport

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        billing: BillingPolicy | None = None,
        telemetry: Telemetry | None = None,
        extractor: FrameExtractor | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> Orchestrator:
        """Wire the default collaborators described by *config*."""
        telemetry = telemetry or Telemetry.from_env()
        transport = RetryingTransport(
            client,
            policy=config.retry,
            telemetry=telemetry,
            sleep=sleep,
            timeout_s=config.http_timeout_s,
        )
        credentials = CredentialCache()
        adapters: dict[str, ProviderAdapter] = {
            "mock": MockAdapter(
                duration_mode=config.duration_mode_for("mock"),
                clip_seconds=config.clip_seconds,
            )
        }

        if config.kling_access_key and config.kling_secret_key:
            credentials.register(
                "kling", JWTSigner(config.kling_access_key, config.kling_secret_key)
            )
            adapters["kling"] = KlingAdapter(
                transport,
                credentials.signer_for("kling"),
                duration_mode=config.duration_mode_for("kling"),
                clip_seconds=config.clip_seconds,
                **_base_url(config, "kling"),
            )

        store = _pollo_key_store(config, client)
        if store is not None:
            credentials.register("pollo", StaticKeySigner(store, "pollo"))
            adapters["pollo"] = PolloAdapter(
                transport,
                credentials.signer_for("pollo"),
                duration_mode=config.duration_mode_for("pollo"),
                clip_seconds=config.clip_seconds,
                **_base_url(config, "pollo"),
            )

        if billing is None:
            billing = DemoBilling() if config.mock_only else NoBilling()
        journal_path = config.journal_path or config.cache_dir / "tasks.json"
        return cls(
            adapters,
            default_provider=config.provider,
            cache=ResultCache(
                LocalArtifactStore(config.cache_dir),
                budget_bytes=config.cache_budget_bytes,
                telemetry=telemetry,
            ),
            journal=TaskJournal(journal_path),
            continuity=ContinuityBridge(extractor, telemetry=telemetry),
            poll_loop=PollLoop(
                policy=config.poll,
                retry_policy=config.retry,
                sleep=sleep,
                telemetry=telemetry,
            ),
            billing=billing,
            credentials=credentials,
            telemetry=telemetry,
            request_concurrency=config.request_concurrency,
            transport=transport,
        )

    # --- Public API ---

    async def generate(
        self,
        request: GenerationRequest,
        *,
        provider: str | None = None,
        on_status: Callable[[TaskStatus], None] | None = None,
    ) -> Path:
        """Generate (or fetch from cache) one clip and return its local path.

        Raises:
            APIError: Any classified provider failure. ``PollTimeoutError`` is
                indeterminate; the job stays journaled for :meth:`reconcile`.
        """
        adapter = self.adapter_for(provider)
        entry = await self._generate_entry(adapter, request, on_status)
        return _artifact_path(entry)

    async def generate_chain(
        self,
        requests: Sequence[GenerationRequest],
        *,
        provider: str | None = None,
        continuity: bool = True,
        on_status: Callable[[TaskStatus], None] | None = None,
    ) -> list[Path]:
        """Generate *requests* in order, seeding each clip from the previous one.

        With a ``fixed_clip`` duration policy, an element longer than the clip
        length becomes several clips, so the result may be longer than
        *requests*.
        """
        adapter = self.adapter_for(provider)
        elements = self._expand_chain(adapter, requests)
        paths: list[Path] = []
        seed: bytes | None = None
        previous: CacheEntry | None = None

        for index, element in enumerate(elements):
            effective = element
            if seed is not None:
                if element.seed_image is not None:
                    logger.debug("Chain element %d keeps its own seed image", index)
                else:
                    effective = self.continuity.inject_seed(element, seed)

            entry = await self._generate_entry(adapter, effective, on_status)
            if previous is not None and seed is not None and effective is not element:
                self.continuity.record_link(previous.fingerprint, entry.fingerprint, seed)
            paths.append(_artifact_path(entry))

            seed = None
            if continuity and index < len(elements) - 1:
                seed = await self.continuity.extract_seed(_artifact_path(entry))
            previous = entry

        return paths

    async def generate_many(
        self,
        chains: Sequence[Sequence[GenerationRequest]],
        *,
        provider: str | None = None,
        continuity: bool = True,
    ) -> list[list[Path]]:
        """Run independent chains concurrently; results keep input order.

        The first failure cancels the remaining chains and is re-raised.
        """
        tasks = [
            asyncio.create_task(
                self.generate_chain(chain, provider=provider, continuity=continuity)
            )
            for chain in chains
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def status_stream(
        self, request: GenerationRequest, *, provider: str | None = None
    ) -> AsyncIterator[TaskStatus]:
        """Run one generation and yield each distinct status as it is observed.

        A provider-reported failure ends the stream with a ``failed`` status;
        every other error is raised. Closing the iterator early cancels the
        generation.
        """
        queue: asyncio.Queue[TaskStatus | None] = asyncio.Queue()
        task = asyncio.create_task(
            self.generate(request, provider=provider, on_status=queue.put_nowait)
        )
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while (status := await queue.get()) is not None:
                yield status
            try:
                await task
            except GenerationFailedError:
                return
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def reconcile(self) -> list[Path]:
        """Resume polling every journaled task left over from an earlier run.

        Tasks whose provider is not configured are left in the journal. A task
        that fails or stays indeterminate is logged and skipped; the rest are
        still reconciled.
        """
        if self.journal is None:
            return []
        recovered: list[Path] = []
        for handle in await self.journal.pending():
            adapter = self._adapters.get(handle.provider)
            if adapter is None:
                logger.warning(
                    "Cannot reconcile %s task %s: provider not configured",
                    handle.provider,
                    handle.provider_task_id,
                )
                continue
            try:
                entry = await self._resume(adapter, handle)
            except APIError as e:
                logger.warning(
                    "Reconcile of %s task %s did not complete: %s",
                    handle.provider,
                    handle.provider_task_id,
                    e,
                )
                continue
            path = _artifact_path(entry)
            if path not in recovered:
                recovered.append(path)
        self._telemetry.record("reconcile.done", recovered=len(recovered))
        return recovered

    def adapter_for(self, provider: str | None = None) -> ProviderAdapter:
        """Resolve the adapter for *provider*, honoring the billing policy."""
        if self._billing.should_bypass():
            mock = self._adapters.get("mock")
            if mock is None:
                raise ConfigurationError(
                    "Billing bypass is active but no mock adapter is configured",
                    hint="Register a 'mock' adapter or use NoBilling.",
                )
            return mock
        name = provider or self._default_provider
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ConfigurationError(
                f"Provider {name!r} is not configured",
                hint=f"Configured providers: {sorted(self._adapters)}",
            )
        return adapter

    async def aclose(self) -> None:
        """Release the HTTP client and forget cached credentials."""
        self.credentials.clear()
        if self._transport is not None:
            await self._transport.aclose()

    async def __aenter__(self) -> Orchestrator:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # --- Internals ---

    def _expand_chain(
        self, adapter: ProviderAdapter, requests: Sequence[GenerationRequest]
    ) -> list[GenerationRequest]:
        caps = adapter.capabilities
        if caps.duration_mode != "fixed_clip":
            return list(requests)
        expanded: list[GenerationRequest] = []
        for request in requests:
            count = max(1, math.ceil(request.duration_seconds / caps.clip_seconds - 1e-9))
            clip = replace(request, duration_seconds=float(caps.clip_seconds))
            if count > 1:
                logger.info(
                    "Splitting %.1fs request into %d clips of %ds",
                    request.duration_seconds,
                    count,
                    caps.clip_seconds,
                )
            expanded.append(clip)
            # Follow-on clips continue from the previous one, not from the
            # caller's original seed, and each is its own unit of work.
            expanded.extend(
                replace(clip, seed_image=None, seed_tail_image=None, segment_index=i)
                for i in range(1, count)
            )
        return expanded

    async def _generate_entry(
        self,
        adapter: ProviderAdapter,
        request: GenerationRequest,
        on_status: Callable[[TaskStatus], None] | None,
    ) -> CacheEntry:
        normalization = adapter.normalize_duration(request.duration_seconds)
        if normalization.rounded:
            logger.info(
                "Duration %.1fs submitted as %ds for %s",
                normalization.requested,
                normalization.submitted,
                adapter.name,
            )
            self._telemetry.record(
                "duration.normalized",
                provider=adapter.name,
                requested=normalization.requested,
                submitted=normalization.submitted,
            )
        fp = compute_fingerprint(
            request, provider=adapter.name, duration=normalization.submitted
        )

        while True:
            begin = await self.cache.begin_or_join(fp)
            if isinstance(begin, AlreadyComplete):
                logger.debug("Cache hit for %s", fp[:12])
                path = _artifact_path(begin.entry)
                notify_observer(
                    on_status, TaskStatus.succeeded(str(path), raw_state="cached")
                )
                return begin.entry
            if isinstance(begin, Started):
                break
            logger.debug("Joining in-flight generation %s", fp[:12])
            entry = await self._join(begin)
            if entry is not None:
                path = _artifact_path(entry)
                notify_observer(
                    on_status, TaskStatus.succeeded(str(path), raw_state="joined")
                )
                return entry

        token = begin.token
        try:
            async with self._semaphore:
                handle = await self._journaled_handle(adapter, fp)
                if handle is not None:
                    logger.info(
                        "Resuming journaled %s task %s instead of resubmitting",
                        adapter.name,
                        handle.provider_task_id,
                    )
                    self._telemetry.record(
                        "generate.resumed",
                        provider=adapter.name,
                        task_id=handle.provider_task_id,
                        fingerprint=fp,
                    )
                    await self.cache.attach_handle(token, handle)
                    return await self._drive(adapter, token, handle, on_status)
                try:
                    handle = await adapter.submit(request, fingerprint=fp)
                except Exception as e:
                    await self.cache.reject(token, e)
                    raise
                self._telemetry.record(
                    "generate.submitted",
                    provider=adapter.name,
                    task_id=handle.provider_task_id,
                    fingerprint=fp,
                )
                await self.cache.attach_handle(token, handle)
                await self._journal(handle)
                return await self._drive(adapter, token, handle, on_status)
        except asyncio.CancelledError:
            await self.cache.abandon(token)
            raise

    async def _drive(
        self,
        adapter: ProviderAdapter,
        token: WorkToken,
        handle: TaskHandle,
        on_status: Callable[[TaskStatus], None] | None,
    ) -> CacheEntry:
        """Poll *handle* to a terminal state and settle the cache entry."""
        try:
            status = await self._poll.run(adapter, handle, on_status=on_status)
            if status.state == "failed":
                raise GenerationFailedError(
                    f"{adapter.name} task {handle.provider_task_id} failed: "
                    f"{status.reason or 'no reason given'}",
                    reason=status.reason,
                    provider=adapter.name,
                )
            if status.video_url is None:
                raise InternalError("Succeeded status without a video URL")
            data = await adapter.download(status.video_url)
        except (GenerationFailedError, PermanentError) as e:
            # Terminal for this task: nothing left to reconcile.
            await self.cache.fail(token, e)
            await self._forget(handle)
            raise
        except Exception as e:
            # Indeterminate: the journal keeps the task for reconcile().
            await self.cache.fail(token, e)
            raise

        entry = await self.cache.store(token, data)
        await self._forget(handle)
        logger.info(
            "Stored %s task %s as %s",
            adapter.name,
            handle.provider_task_id,
            entry.fingerprint[:12],
        )
        return entry

    async def _resume(self, adapter: ProviderAdapter, handle: TaskHandle) -> CacheEntry:
        fp = handle.fingerprint or handle.provider_task_id
        while True:
            begin = await self.cache.begin_or_join(fp)
            if isinstance(begin, AlreadyComplete):
                logger.info(
                    "%s task %s duplicates a cached clip; dropping it from the journal",
                    handle.provider,
                    handle.provider_task_id,
                )
                await self._forget(handle)
                return begin.entry
            if isinstance(begin, Started):
                break
            entry = await self._join(begin)
            if entry is not None:
                return entry
        token = begin.token
        try:
            await self.cache.attach_handle(token, handle)
            async with self._semaphore:
                return await self._drive(adapter, token, handle, None)
        except asyncio.CancelledError:
            await self.cache.abandon(token)
            raise

    async def _join(self, begin: AlreadyInProgress) -> CacheEntry | None:
        """Await another caller's generation; ``None`` if that caller was cancelled.

        Shielded, so cancelling this joiner never cancels the creator's work.
        When the creator is cancelled instead, the joiner was not, and it
        should start the work itself.
        """
        try:
            return await asyncio.shield(begin.future)
        except asyncio.CancelledError:
            if begin.future.cancelled():
                logger.debug("In-flight generation was abandoned; taking it over")
                return None
            raise

    async def _journaled_handle(
        self, adapter: ProviderAdapter, fingerprint: str
    ) -> TaskHandle | None:
        if self.journal is None:
            return None
        return await self.journal.find(fingerprint, provider=adapter.name)

    async def _journal(self, handle: TaskHandle) -> None:
        if self.journal is None:
            return
        try:
            await self.journal.record(handle)
        except OSError as e:
            logger.error(
                "Could not journal %s task %s; it will not survive a restart: %s",
                handle.provider,
                handle.provider_task_id,
                e,
            )

    async def _forget(self, handle: TaskHandle) -> None:
        if self.journal is None:
            return
        try:
            await self.journal.remove(handle)
        except OSError as e:
            logger.warning("Could not clear journal entry: %s", e)


def _artifact_path(entry: CacheEntry) -> Path:
    if entry.artifact_path is None:
        raise InternalError(
            f"Cache entry {entry.fingerprint[:12]} has no artifact",
            hint="This is a Segue internal error. Please report it.",
        )
    return entry.artifact_path


def _base_url(config: Config, provider: str) -> dict[str, str]:
    url = config.base_urls.get(provider)
    return {"base_url": url} if url else {}


def _pollo_key_store(
    config: Config, client: httpx.AsyncClient | None
) -> CredentialStore | None:
    if config.pollo_api_key:
        return EnvKeyStore({"pollo": config.pollo_api_key})
    if config.key_store_url and config.key_store_anon_key:
        return SupabaseKeyStore(
            config.key_store_url,
            config.key_store_anon_key,
            client=client,
            timeout_s=config.http_timeout_s,
        )
    return None
