"""AI symbol resolver (Ollama)."""

from brokermail_ledger.symbol_resolver.prompts import PROMPT_VERSION, SymbolPrompt
from brokermail_ledger.symbol_resolver.service import (
    ResolverConcurrencyLimiter,
    SymbolResolution,
    SymbolResolver,
)

__all__ = [
    "PROMPT_VERSION",
    "ResolverConcurrencyLimiter",
    "SymbolPrompt",
    "SymbolResolution",
    "SymbolResolver",
]
