"""Client for the external contract analysis engine.

The engine is a chat-style service: a session key is opened first, then the
contract is posted with ``stream: true`` and the report arrives as
server-sent ``data:`` lines carrying ``{"body": ...}`` fragments and
``{"status": ...}`` markers.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Literal, Optional

import httpx

from config import settings
from services.errors import EngineDispatchFailed, EngineStreamFailed

logger = logging.getLogger(__name__)

AUDIT_PROMPT = (
    "Please perform a comprehensive security audit of this smart contract code. "
    "Analyze for vulnerabilities, security issues, gas optimization opportunities, and best practices. "
    "Provide a detailed report with severity levels and recommendations."
)

COMPLETE_STATUSES = {"complete", "completed", "done"}
FAILED_STATUSES = {"error", "failed"}


@dataclass(frozen=True)
class EngineHandle:
    session_key: str
    response: Optional[httpx.Response] = None
    client: Optional[httpx.AsyncClient] = None


@dataclass(frozen=True)
class EngineEvent:
    kind: Literal["fragment", "completed", "failed"]
    text: str = ""


class AnalysisEngine(ABC):
    @abstractmethod
    async def dispatch(self, *, code: str, language: str) -> EngineHandle:
        """Submit a contract. Raises EngineDispatchFailed before any output is produced."""
        raise NotImplementedError

    @abstractmethod
    def stream(self, handle: EngineHandle) -> AsyncIterator[EngineEvent]:
        """Yield report fragments, ending with at most one terminal event."""
        raise NotImplementedError

    async def close(self, handle: EngineHandle) -> None:
        if handle.response is not None:
            await handle.response.aclose()
        if handle.client is not None:
            await handle.client.aclose()


def parse_stream_line(line: str) -> Optional[EngineEvent]:
    """Map one SSE line from the engine to an event; other lines are ignored."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    raw = line[5:].strip()
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        logger.debug("Ignoring non-JSON engine line: %s", raw[:120])
        return None
    if not isinstance(data, dict):
        return None
    if data.get("body"):
        return EngineEvent(kind="fragment", text=str(data["body"]))
    status = str(data.get("status") or "").lower()
    if status in COMPLETE_STATUSES:
        return EngineEvent(kind="completed")
    if status in FAILED_STATUSES:
        return EngineEvent(kind="failed", text=str(data.get("message") or data.get("error") or "engine error"))
    return None


class ShipableAnalysisEngine(AnalysisEngine):
    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        timeout_seconds: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = httpx.Timeout(timeout_seconds, connect=15.0)
        self._transport = transport

    async def _open_session(self, client: httpx.AsyncClient) -> str:
        response = await client.post(f"{self.base_url}/chat/sessions", json={"source": "website"})
        if response.status_code >= 400:
            raise EngineDispatchFailed(f"Engine session request failed ({response.status_code})")
        payload = response.json()
        key = (payload.get("data") or {}).get("key") if isinstance(payload, dict) else None
        if not key:
            raise EngineDispatchFailed("Engine session response did not include a key")
        return str(key)

    async def dispatch(self, *, code: str, language: str) -> EngineHandle:
        client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        try:
            session_key = await self._open_session(client)
            request_payload = {
                "sessionKey": session_key,
                "messages": [{"role": "user", "content": f"{AUDIT_PROMPT}\n\nLanguage: {language}\n\n{code}"}],
                "token": self.token,
                "stream": True,
            }
            request = client.build_request(
                "POST",
                f"{self.base_url}/chat/open-playground",
                files={"request": (None, json.dumps(request_payload))},
            )
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            await client.aclose()
            raise EngineDispatchFailed(f"Engine request failed: {exc}") from exc
        except EngineDispatchFailed:
            await client.aclose()
            raise

        if response.status_code >= 400:
            detail = (await response.aread()).decode("utf-8", errors="replace")[:300]
            await response.aclose()
            await client.aclose()
            raise EngineDispatchFailed(f"Analysis failed ({response.status_code}): {detail}")

        logger.info("Dispatched %s contract to analysis engine (session key %s)", language, session_key)
        return EngineHandle(session_key=session_key, response=response, client=client)

    async def stream(self, handle: EngineHandle) -> AsyncIterator[EngineEvent]:
        if handle.response is None:
            raise EngineStreamFailed("Engine handle has no open response")
        try:
            async for line in handle.response.aiter_lines():
                event = parse_stream_line(line)
                if event is None:
                    continue
                yield event
                if event.kind != "fragment":
                    return
        except httpx.HTTPError as exc:
            raise EngineStreamFailed(f"Engine stream interrupted: {exc}") from exc
        finally:
            await self.close(handle)


_engine_override: Optional[AnalysisEngine] = None


def set_analysis_engine(engine: Optional[AnalysisEngine]) -> None:
    global _engine_override
    _engine_override = engine


def get_analysis_engine() -> AnalysisEngine:
    if _engine_override is not None:
        return _engine_override
    return ShipableAnalysisEngine(
        base_url=settings.ANALYSIS_ENGINE_BASE_URL,
        token=settings.ANALYSIS_ENGINE_TOKEN,
        timeout_seconds=float(settings.ANALYSIS_ENGINE_TIMEOUT_SECONDS),
    )
