"""
ProfileAggregator — fans out one request per entity and merges the results.

All fetches for one login run concurrently (bounded by a semaphore).  Each
successful response is folded into a shared profile by its entity handler;
handler calls are serialized behind a lock.  The first failing entity fails
the whole aggregation: remaining requests are cancelled and nothing else is
written to the profile.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional, Sequence, Union

from connectors.entities import EntitySpec, Profile
from connectors.errors import ConnectorError, FetchError, HandlerError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 16


class FetchResponse(NamedTuple):
    """What an authenticated fetch hands back: ``(status_code, body)``."""

    status_code: int
    body: bytes = b""


# (uri, query_params) -> FetchResponse; raises on transport errors / timeouts.
FetchFn = Callable[[str, Dict[str, str]], Awaitable[FetchResponse]]

# Receives either the merged profile or the error that failed the run.
CompletionCallback = Callable[[Union[Profile, ConnectorError]], Any]

# Optional per-entity query params; falls back to the common params.
ParamsFn = Callable[[EntitySpec], Dict[str, str]]


@dataclass
class FetchOutcome:
    """Per-entity result."""

    path: str
    data: Any = None
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class _Run:
    """State for a single aggregation; never reused across logins."""

    def __init__(self) -> None:
        self.profile: Profile = {}
        self.lock = asyncio.Lock()
        self.settled = False


class ProfileAggregator:
    def __init__(self, max_concurrency: int = DEFAULT_MAX_CONCURRENCY):
        self.max_concurrency = max(1, max_concurrency)

    # ── public entry points ─────────────────────────────────────────────

    async def aggregate(
        self,
        entities: Sequence[EntitySpec],
        fetch: FetchFn,
        resource_uri: str,
        query_params: Optional[Dict[str, str]] = None,
        params_for: Optional[ParamsFn] = None,
    ) -> Profile:
        """
        Fetch every entity and return the merged profile.

        Raises
        ------
        FetchError
            An entity request returned non-2xx or failed in transport.
        HandlerError
            An entity handler raised while folding its response in.
        """
        if not entities:
            return {}

        common = dict(query_params or {})
        run = _Run()
        sem = asyncio.Semaphore(self.max_concurrency)

        async def fetch_one(entity: EntitySpec) -> None:
            params = params_for(entity) if params_for else common
            async with sem:
                outcome = await self._fetch(entity, fetch, resource_uri + entity.path, params)
            if not outcome.ok:
                run.settled = True
                raise outcome.error
            async with run.lock:
                if run.settled:
                    return
                try:
                    entity.handler(run.profile, outcome.data)
                except Exception as exc:
                    run.settled = True
                    raise HandlerError(entity.path, exc) from exc

        tasks = [asyncio.create_task(fetch_one(e)) for e in entities]
        logger.info("Profile aggregation started — %d entit(ies)", len(tasks))
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            failed = [t for t in done if not t.cancelled() and t.exception() is not None]
            if failed:
                run.settled = True
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
                error = failed[0].exception()
                logger.warning("Profile aggregation failed: %s", error)
                raise error
        except asyncio.CancelledError:
            run.settled = True
            for task in tasks:
                task.cancel()
            raise

        run.settled = True
        logger.info("Profile aggregation complete — keys=%s", sorted(run.profile))
        return run.profile

    async def run(
        self,
        entities: Sequence[EntitySpec],
        fetch: FetchFn,
        resource_uri: str,
        query_params: Optional[Dict[str, str]],
        on_complete: CompletionCallback,
        params_for: Optional[ParamsFn] = None,
    ) -> None:
        """
        Callback flavour of :meth:`aggregate`.

        ``on_complete`` is invoked exactly once with the merged profile, or
        with the ``ConnectorError`` that failed the aggregation.  Unexpected
        exceptions are wrapped in a ``ConnectorError``.
        """
        try:
            profile = await self.aggregate(
                entities, fetch, resource_uri, query_params, params_for=params_for
            )
        except ConnectorError as exc:
            on_complete(exc)
            return
        except Exception as exc:
            logger.error("Profile aggregation crashed: %s", exc, exc_info=True)
            error = ConnectorError(f"profile aggregation failed: {exc}")
            error.__cause__ = exc
            on_complete(error)
            return
        on_complete(profile)

    # ── single fetch ────────────────────────────────────────────────────

    @staticmethod
    async def _fetch(
        entity: EntitySpec,
        fetch: FetchFn,
        uri: str,
        params: Dict[str, str],
    ) -> FetchOutcome:
        try:
            response = await fetch(uri, params)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            return FetchOutcome(entity.path, error=FetchError(entity.path, "request timed out"))
        except Exception as exc:
            logger.debug("Transport error for %s", uri, exc_info=True)
            return FetchOutcome(entity.path, error=FetchError(entity.path, f"transport error: {exc}"))

        try:
            status_code, body = response
            status_code = int(status_code)
        except (TypeError, ValueError):
            return FetchOutcome(
                entity.path,
                error=FetchError(entity.path, f"malformed fetch result: {response!r}"),
            )

        if not 200 <= status_code < 300:
            return FetchOutcome(
                entity.path,
                error=FetchError(
                    entity.path,
                    f"unexpected status {status_code}",
                    status_code=status_code,
                ),
            )

        if not body:
            return FetchOutcome(entity.path, data=None)
        try:
            data = json.loads(body)
        except (TypeError, ValueError) as exc:
            return FetchOutcome(
                entity.path,
                error=FetchError(entity.path, f"invalid JSON body: {exc}", status_code),
            )
        return FetchOutcome(entity.path, data=data)
