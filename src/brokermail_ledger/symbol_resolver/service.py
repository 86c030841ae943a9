"""AI symbol resolver over the Ollama chat API.

Only consulted for ambiguous symbols (missing, not a ticker, option-like or
low parser confidence). Every call is bounded by
``ResolverConfig.timeout_seconds``, including the wait for a free slot.

Privacy: email content is never logged above DEBUG.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from brokermail_ledger.errors import ResolverTimeoutError, SymbolResolverError
from brokermail_ledger.schemas.transaction import AssetType
from brokermail_ledger.symbol_resolver.prompts import PROMPT_VERSION, SymbolPrompt

if TYPE_CHECKING:
    from brokermail_ledger.config import ResolverConfig

logger = logging.getLogger(__name__)

RESOLVED_TICKER_RE = re.compile(r"^[A-Z]{1,5}(?:\.[A-Z]{1,2})?$")


@dataclass
class SymbolResolution:
    """Answer from the resolver."""

    symbol: str | None
    asset_type_guess: AssetType | None
    confidence: float
    model: str = ""
    prompt_version: str = PROMPT_VERSION

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "asset_type_guess": self.asset_type_guess.value if self.asset_type_guess else None,
            "confidence": self.confidence,
            "model": self.model,
            "prompt_version": self.prompt_version,
        }


class ResolverConcurrencyLimiter:
    """Semaphore-based concurrency limiter for resolver requests.

    Prevents overwhelming the Ollama server with too many concurrent requests.
    Thread-safe for synchronous usage.
    """

    def __init__(self, max_concurrent: int = 2) -> None:
        self._semaphore = threading.Semaphore(max_concurrent)
        self._active_count = 0
        self._lock = threading.Lock()

    def acquire(self, timeout: float | None = None) -> bool:
        """Acquire a slot for a resolver request.

        Args:
            timeout: Maximum time to wait (None = blocking)

        Returns:
            True if acquired, False if timeout
        """
        acquired = self._semaphore.acquire(blocking=True, timeout=timeout)
        if acquired:
            with self._lock:
                self._active_count += 1
        return acquired

    def release(self) -> None:
        """Release a slot after request completes."""
        with self._lock:
            self._active_count -= 1
        self._semaphore.release()

    @property
    def active_requests(self) -> int:
        """Current number of active resolver requests."""
        with self._lock:
            return self._active_count


class SymbolResolver:
    """Resolves security names and option strings to tickers."""

    def __init__(self, config: ResolverConfig, client: httpx.Client | None = None) -> None:
        """Initialize the resolver.

        Args:
            config: Resolver configuration.
            client: Optional preconfigured httpx client (tests).
        """
        self.config = config

        # Support formats: "Bearer token" or "Custom-Header: value"
        headers = {}
        if config.auth_header:
            if ":" in config.auth_header:
                key, value = config.auth_header.split(":", 1)
                headers[key.strip()] = value.strip()
            else:
                headers["Authorization"] = config.auth_header

        self._client = client or httpx.Client(
            timeout=httpx.Timeout(
                connect=min(10.0, float(config.timeout_seconds)),
                read=float(config.timeout_seconds),
                write=min(30.0, float(config.timeout_seconds)),
                pool=min(10.0, float(config.timeout_seconds)),
            ),
            headers=headers,
        )
        self._prompt = SymbolPrompt()
        self._limiter = ResolverConcurrencyLimiter(max_concurrent=config.max_concurrent)

    @property
    def is_enabled(self) -> bool:
        return self.config.enabled

    @property
    def active_requests(self) -> int:
        return self._limiter.active_requests

    def resolve_symbol(self, text: str) -> SymbolResolution:
        """Ask the model for the ticker described by ``text``.

        Args:
            text: Email excerpt with the symbol as written.

        Returns:
            SymbolResolution (symbol may be None when the model is unsure).

        Raises:
            ResolverTimeoutError: No answer within timeout_seconds.
            SymbolResolverError: HTTP failure or unusable answer.
        """
        timeout = float(self.config.timeout_seconds)
        deadline = time.monotonic() + timeout

        if not self._limiter.acquire(timeout=timeout):
            logger.warning(
                "Symbol resolver timed out waiting for a slot (max=%d, active=%d)",
                self.config.max_concurrent,
                self._limiter.active_requests,
            )
            raise ResolverTimeoutError(timeout)

        try:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ResolverTimeoutError(timeout)

            url = f"{self.config.ollama_url.rstrip('/')}/api/chat"
            payload = {
                "model": self.config.model,
                "messages": [
                    {"role": "system", "content": self._prompt.system_prompt},
                    {"role": "user", "content": self._prompt.format_user_message(text)},
                ],
                "stream": False,
                "format": "json",
            }
            logger.debug("Calling Ollama model %s at %s", self.config.model, self.config.ollama_url)

            request_timeout = httpx.Timeout(
                connect=min(10.0, remaining),
                read=remaining,
                write=min(30.0, remaining),
                pool=min(10.0, remaining),
            )
            response = self._client.post(url, json=payload, timeout=request_timeout)
            response.raise_for_status()
            content = response.json().get("message", {}).get("content", "")

        except httpx.TimeoutException as e:
            logger.warning("Ollama request timed out after %.1fs", timeout)
            raise ResolverTimeoutError(timeout) from e
        except httpx.HTTPStatusError as e:
            logger.error(
                "Ollama API error %s for model '%s' at %s",
                e.response.status_code,
                self.config.model,
                self.config.ollama_url,
            )
            raise SymbolResolverError(f"Ollama returned HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error("Ollama request failed: %s (URL: %s)", e, self.config.ollama_url)
            raise SymbolResolverError(f"Ollama request failed: {e}") from e
        except ValueError as e:
            raise SymbolResolverError(f"Ollama returned invalid JSON: {e}") from e
        finally:
            self._limiter.release()

        return self._parse_answer(content)

    def _parse_answer(self, content: str) -> SymbolResolution:
        """Validate the model's JSON answer."""
        content = (content or "").strip()
        if content.startswith("```"):
            content = content.strip("`").removeprefix("json").strip()
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise SymbolResolverError(f"Unparseable resolver answer: {content[:100]}") from e
        if not isinstance(data, dict):
            raise SymbolResolverError("Resolver answer is not a JSON object")

        try:
            confidence = float(data.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        confidence = max(0.0, min(1.0, confidence))

        symbol = data.get("symbol")
        if isinstance(symbol, str):
            symbol = symbol.strip().upper()
            if not RESOLVED_TICKER_RE.match(symbol):
                logger.debug("Discarding malformed resolver symbol %r", symbol)
                symbol = None
        else:
            symbol = None

        try:
            asset_type = AssetType(str(data.get("asset_type", "")).lower())
        except ValueError:
            asset_type = None

        return SymbolResolution(
            symbol=symbol,
            asset_type_guess=asset_type,
            confidence=confidence if symbol else 0.0,
            model=self.config.model,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> SymbolResolver:
        return self

    def __exit__(self, *args) -> None:
        self.close()
