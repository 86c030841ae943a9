"""Prompt templates for AI symbol resolution.

Prompts are versioned so that resolver answers can be traced back to the
prompt that produced them.
"""

from __future__ import annotations

from dataclasses import dataclass

# v1.1: Ask for asset type alongside the ticker
PROMPT_VERSION = "v1.1"


@dataclass
class SymbolPrompt:
    """Prompt template for ticker resolution.

    Attributes:
        version: Prompt version.
        system_prompt: System message setting LLM behavior.
        user_template: Template for user message with placeholders.
    """

    version: str = PROMPT_VERSION

    system_prompt: str = """You identify the exchange ticker symbol of a security
mentioned in a brokerage trade confirmation email.

Rules:
1. Answer with the ticker as traded, e.g. "AAPL", "SHOP.TO", "CNR.TO"
2. Canadian listings use the ".TO" suffix (TSX) or ".V" (TSX Venture)
3. For an option contract, answer with the underlying ticker
4. If you cannot tell, answer with symbol null and a low confidence
5. Never invent a ticker for an unknown company

asset_type is one of: stock, etf, option, forex, crypto, reit

Respond in JSON format:
{
    "symbol": "AAPL",
    "asset_type": "stock",
    "confidence": 0.9
}"""

    user_template: str = """Identify the security in this confirmation:

{email_excerpt}

Provide your answer in JSON format."""

    def format_user_message(self, email_excerpt: str) -> str:
        """Format the user message.

        Args:
            email_excerpt: Subject, symbol as written and body excerpt.

        Returns:
            Formatted user message.
        """
        return self.user_template.format(email_excerpt=email_excerpt.strip())
