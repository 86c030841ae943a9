"""
Wealthsimple trade confirmation template.

Handles buy/sell confirmations (sentence style "Bought 100 shares of AAPL"
and field style "Symbol: / Action: / Quantity:"), dividend notices and
option expiration notices.
"""

import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from zoneinfo import ZoneInfo

from ..errors import ParseError
from ..identification import extract_order_ids
from ..schemas.email import RawEmail, format_timestamp
from ..schemas.fingerprint import strip_html
from ..schemas.transaction import ParsedTransactionCandidate, TransactionType
from .base import BaseTemplateParser, SenderTemplate, infer_asset_type, sender_domain

logger = logging.getLogger(__name__)

QTY = r"(\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)"
SYMBOL = r"([A-Z]{1,5}(?:\.[A-Z]{1,2})?)(?![A-Za-z])"
CURRENCY_SIGN = r"(?:C\$|CA\$|US\$|\$)"

ACTION_RE = re.compile(
    r"(?i:\b(bought|purchased|acquired|sold))\s+"
    + QTY
    + r"\s+(?i:(?:shares?|units?)\s+(?:of\s+)?)?"
    + SYMBOL
)
NAME_ACTION_RE = re.compile(
    r"(?i:\b(bought|purchased|acquired|sold))\s+"
    + QTY
    + r"\s+(?i:shares?|units?)\s+(?i:of)\s+([A-Z][A-Za-z0-9&' -]{1,60}?)"
    r"(?=\s+(?i:at|@|for)\b|\s*[.,;\n]|\s*$)"
)
FILL_RE = re.compile(
    r"(?i:\bfilled)\s*:?\s+"
    + QTY
    + r"\s*(?i:of|/)\s*"
    + QTY
    + r"\s+(?i:shares?|units?)(?:\s+(?i:of)\s+"
    + SYMBOL
    + r")?"
)
SYMBOL_FIELD_RE = re.compile(r"(?m)^\s*(?i:symbol|ticker)\s*:\s*" + SYMBOL)
SECURITY_FIELD_RE = re.compile(
    r"(?m)^\s*(?i:security|etf|stock|company|fund)\s*:\s*([^\n(]+?)\s*\(" + SYMBOL + r"\)"
)
NAME_FIELD_RE = re.compile(r"(?im)^\s*(?:company|security)\s*:\s*([^\n]+)")
OPTION_RE = re.compile(
    r"\b([A-Z]{1,5})\s+((?:JAN|FEB|MAR|APR|MAY|JUN|JUL|AUG|SEP|OCT|NOV|DEC)\s+\d{1,2}"
    r"(?:\s+\d{4})?\s+\$?\d+(?:\.\d+)?\s+(?:CALL|PUT))\b"
)

QUANTITY_FIELD_RE = re.compile(
    r"(?im)^\s*(?:quantity|units|shares(?:\s+held)?|number\s+of\s+shares)\s*:\s*" + QTY
)
CONTRACTS_RE = re.compile(r"(?i)" + QTY + r"\s+contracts?\b")
ORDER_QTY_FIELD_RE = re.compile(
    r"(?im)^\s*(?:order\s+quantity|order\s+size|total\s+order(?:\s+size)?)\s*:\s*" + QTY
)

PRICE_PATTERNS = [
    re.compile(
        r"(?i)(?<!strike )(?:execution\s+price|fill\s+price|average\s+price|"
        r"price\s+per\s+(?:share|unit)|price)\s*:\s*(" + CURRENCY_SIGN + r")?\s*" + QTY
        + r"(\s*(?:USD|CAD))?"
    ),
    re.compile(r"(?i)(?:\bat|@)\s*(" + CURRENCY_SIGN + r")\s*" + QTY + r"(\s*(?:USD|CAD))?"),
    re.compile(r"(?i)@\s*()" + QTY + r"(\s*(?:USD|CAD))?"),
    re.compile(
        r"(?i)(" + CURRENCY_SIGN + r")\s*" + QTY + r"(\s*(?:USD|CAD))?\s*(?:per|/)\s*(?:share|unit)"
    ),
]

TOTAL_PATTERNS = [
    re.compile(r"(?i)\btotal(?:\s+(?:amount|cost|value))?\s*:?\s*" + CURRENCY_SIGN + r"\s*" + QTY),
    re.compile(r"(?i)\bgross\s+(?:proceeds|amount)\s*:?\s*" + CURRENCY_SIGN + r"\s*" + QTY),
    re.compile(r"(?i)\bnet\s+(?:proceeds|amount)\s*:?\s*" + CURRENCY_SIGN + r"\s*" + QTY),
]
FEE_RE = re.compile(r"(?i)\b(?:commission|fees?)\s*:?\s*" + CURRENCY_SIGN + r"\s*" + QTY)

ACCOUNT_FIELD_RE = re.compile(r"(?im)^\s*(?:account(?:\s+type)?|portfolio)\s*:\s*([^\n]+)")
ACCOUNT_TOKEN_RE = re.compile(
    r"\b(TFSA|RRSP|RESP|LIRA|RRIF|margin|cash|non[- ]registered|personal)\b", re.IGNORECASE
)
REGISTERED_ACCOUNT_RE = re.compile(r"\b(TFSA|RRSP|RESP|LIRA|RRIF)\b")
CURRENCY_FIELD_RE = re.compile(r"(?im)^\s*currency\s*:\s*(USD|CAD)\b")

OPTION_EXPIRY_RE = re.compile(
    r"(?is)\boption\b.*\bexpir|\bexpired\b.*\b(?:call|put|option)\b"
)
TYPE_FIELD_RE = re.compile(
    r"(?im)^\s*(?:action|transaction(?:\s+type)?|type|order\s+type)\s*:\s*"
    r"(buy|bought|purchase|sell|sold|sale)\b"
)
DIVIDEND_RE = re.compile(r"(?i)\bdividend\b")
SELL_KEYWORD_RE = re.compile(r"(?i)\b(?:sold|sell|sale)\b")
BUY_KEYWORD_RE = re.compile(r"(?i)\b(?:bought|buy|purchased?|acquired)\b")

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
US_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
LONG_DATE_RE = re.compile(
    r"\b(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\.?\s+(\d{1,2}),?\s+(\d{4})\b",
    re.IGNORECASE,
)
TIME_RE = re.compile(r"\b(\d{1,2}):(\d{2})(?::(\d{2}))?\s*(AM|PM)?\s*(EST|EDT|ET)?\b", re.IGNORECASE)

# Labeled date lines, most specific first
DATE_LABELS = [
    "trade date",
    "execution time",
    "execution",
    "time",
    "transaction date",
    "payment date",
    "expiration date",
    "date",
]
# Lines never used for the trade date
NON_TRADE_DATE_RE = re.compile(r"(?i)settlement|record\s+date")

BROKER_TZ = ZoneInfo("America/Toronto")
FIXED_OFFSETS = {
    "EST": timezone(timedelta(hours=-5)),
    "EDT": timezone(timedelta(hours=-4)),
}

# Parser confidence contributions
BASE_CONFIDENCE = 0.3
PRICE_BONUS = 0.2
ACCOUNT_BONUS = 0.1
DATE_BONUS = 0.2
TIME_BONUS = 0.1
CURRENCY_BONUS = 0.1
MIN_CONFIDENCE = 0.3


def _to_decimal(value: str) -> Decimal:
    try:
        return Decimal(value.replace(",", ""))
    except InvalidOperation as e:
        raise ParseError(
            f"Unparseable number '{value}'", template=SenderTemplate.WEALTHSIMPLE.value
        ) from e


def _parse_date(text: str) -> date | None:
    match = ISO_DATE_RE.search(text)
    if match:
        try:
            return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        except ValueError:
            pass
    match = LONG_DATE_RE.search(text)
    if match:
        try:
            return date(int(match.group(3)), MONTHS[match.group(1)[:3].lower()], int(match.group(2)))
        except ValueError:
            pass
    match = US_DATE_RE.search(text)
    if match:
        try:
            return date(int(match.group(3)), int(match.group(1)), int(match.group(2)))
        except ValueError:
            pass
    return None


def _parse_time(text: str) -> tuple[time, str | None] | None:
    match = TIME_RE.search(text)
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    second = int(match.group(3) or 0)
    meridiem = (match.group(4) or "").upper()
    if meridiem == "PM" and hour < 12:
        hour += 12
    elif meridiem == "AM" and hour == 12:
        hour = 0
    if hour > 23 or minute > 59 or second > 59:
        return None
    zone = match.group(5).upper() if match.group(5) else None
    return time(hour, minute, second), zone


class WealthsimpleParser(BaseTemplateParser):
    """Parser for Wealthsimple confirmation emails."""

    def __init__(self, domains: list[str], default_currency: str = "CAD"):
        self.domains = [d.lower() for d in domains]
        self.default_currency = default_currency

    @property
    def template(self) -> SenderTemplate:
        return SenderTemplate.WEALTHSIMPLE

    def can_parse(self, from_address: str) -> bool:
        domain = sender_domain(from_address)
        return any(domain == d or domain.endswith("." + d) for d in self.domains)

    def parse(self, email: RawEmail, received_at: datetime) -> ParsedTransactionCandidate:
        """Try text, then HTML, then subject; keep the most confident parse."""
        attempts: list[tuple[str, str]] = []
        if email.text_content and email.text_content.strip():
            attempts.append(("text", email.text_content))
        if email.html_content and email.html_content.strip():
            attempts.append(("html", strip_html(email.html_content)))
        if email.subject:
            attempts.append(("subject", email.subject))

        best: ParsedTransactionCandidate | None = None
        last_error: ParseError | None = None
        for strategy, content in attempts:
            try:
                candidate = self._parse_content(content, email.subject or "", received_at)
            except ParseError as e:
                logger.debug(f"Wealthsimple {strategy} parse failed: {e}")
                last_error = e
                continue
            if best is None or candidate.parser_confidence > best.parser_confidence:
                best = candidate

        if best is None:
            raise last_error or ParseError(
                "Email has no parseable content", template=self.template.value
            )
        return best

    def _parse_content(
        self, content: str, subject: str, received_at: datetime
    ) -> ParsedTransactionCandidate:
        transaction_type = self._detect_type(content, subject)
        if transaction_type is None:
            raise ParseError("No transaction keywords found", template=self.template.value)

        symbol_raw, asset_name = self._extract_security(content, transaction_type)
        if not symbol_raw and not asset_name:
            raise ParseError("No security symbol or name found", template=self.template.value)

        quantity, order_quantity = self._extract_quantity(content, transaction_type)
        total = self._extract_first(TOTAL_PATTERNS, content)
        fees = self._match_decimal(FEE_RE, content)
        price, price_currency = self._extract_price(content, transaction_type)

        if transaction_type == TransactionType.DIVIDEND and quantity is None:
            if total is None:
                raise ParseError("Dividend amount not found", template=self.template.value)
            quantity, price = Decimal("1"), total
        if quantity is None or quantity <= 0:
            raise ParseError("Quantity not found", template=self.template.value)

        price_explicit = price is not None
        if price is None and total is not None:
            price = (total / quantity).quantize(Decimal("0.0001"))

        account = self._extract_account(content)
        currency, currency_explicit = self._extract_currency(content, price_currency)
        trade_date, trade_time, zone = self._extract_datetime(content)

        executed_at = None
        if trade_date and trade_time:
            tz = FIXED_OFFSETS.get(zone or "", BROKER_TZ)
            executed_at = format_timestamp(datetime.combine(trade_date, trade_time, tzinfo=tz))

        notes: list[str] = []
        if trade_date is None:
            notes.append("trade date missing, using received date")
        transaction_date = (trade_date or received_at.date()).isoformat()

        confidence = BASE_CONFIDENCE
        if price_explicit:
            confidence += PRICE_BONUS
        if account:
            confidence += ACCOUNT_BONUS
        if trade_date:
            confidence += DATE_BONUS
        if trade_time:
            confidence += TIME_BONUS
        if currency_explicit:
            confidence += CURRENCY_BONUS
        confidence = round(min(1.0, confidence), 2)

        if confidence < MIN_CONFIDENCE:
            raise ParseError(
                f"Parse confidence {confidence} below minimum", template=self.template.value
            )

        order_ids = extract_order_ids(content)
        return ParsedTransactionCandidate(
            transaction_type=transaction_type,
            symbol_raw=symbol_raw,
            asset_type_guess=infer_asset_type(symbol_raw, asset_name),
            quantity=quantity,
            price=price,
            total_amount=total,
            fees=fees,
            currency=currency,
            transaction_date=transaction_date,
            executed_at=executed_at,
            account_type_raw=account,
            order_id=order_ids[0] if order_ids else None,
            order_quantity=order_quantity,
            asset_name=asset_name,
            template=self.template.value,
            confidence=confidence,
            parser_confidence=confidence,
            notes=notes,
        )

    def _detect_type(self, content: str, subject: str) -> TransactionType | None:
        combined = f"{subject}\n{content}"
        if OPTION_EXPIRY_RE.search(combined):
            return TransactionType.OPTION_EXPIRED

        match = ACTION_RE.search(content) or NAME_ACTION_RE.search(content)
        if match:
            verb = match.group(1).lower()
            return TransactionType.SELL if verb == "sold" else TransactionType.BUY

        match = TYPE_FIELD_RE.search(content)
        if match:
            value = match.group(1).lower()
            if value in ("sell", "sold", "sale"):
                return TransactionType.SELL
            return TransactionType.BUY

        if DIVIDEND_RE.search(combined):
            return TransactionType.DIVIDEND
        if SELL_KEYWORD_RE.search(combined):
            return TransactionType.SELL
        if BUY_KEYWORD_RE.search(combined):
            return TransactionType.BUY
        return None

    def _extract_security(
        self, content: str, transaction_type: TransactionType
    ) -> tuple[str | None, str | None]:
        """Return (symbol_raw, asset_name)."""
        if transaction_type == TransactionType.OPTION_EXPIRED:
            match = OPTION_RE.search(content)
            if match:
                return f"{match.group(1)} {' '.join(match.group(2).split())}", match.group(1)

        symbol: str | None = None
        name: str | None = None

        for pattern in (ACTION_RE, FILL_RE, SYMBOL_FIELD_RE):
            match = pattern.search(content)
            if match and match.group(match.re.groups):
                symbol = match.group(match.re.groups)
                break

        match = SECURITY_FIELD_RE.search(content)
        if match:
            name = match.group(1).strip()
            symbol = symbol or match.group(2)

        if not symbol:
            match = NAME_ACTION_RE.search(content)
            if match:
                name = name or match.group(3).strip()

        if not name:
            match = NAME_FIELD_RE.search(content)
            if match:
                name = match.group(1).strip()

        return symbol, name

    def _extract_quantity(
        self, content: str, transaction_type: TransactionType
    ) -> tuple[Decimal | None, Decimal | None]:
        """Return (quantity, order_quantity)."""
        order_quantity = None
        fill = FILL_RE.search(content)
        if fill:
            order_quantity = _to_decimal(fill.group(2))
        else:
            order_quantity = self._match_decimal(ORDER_QTY_FIELD_RE, content)

        if transaction_type == TransactionType.OPTION_EXPIRED:
            quantity = self._match_decimal(CONTRACTS_RE, content)
            return quantity or self._match_decimal(QUANTITY_FIELD_RE, content) or Decimal("1"), None

        match = ACTION_RE.search(content) or NAME_ACTION_RE.search(content)
        if match:
            return _to_decimal(match.group(2)), order_quantity
        if fill:
            return _to_decimal(fill.group(1)), order_quantity
        return self._match_decimal(QUANTITY_FIELD_RE, content), order_quantity

    def _extract_price(
        self, content: str, transaction_type: TransactionType
    ) -> tuple[Decimal | None, str | None]:
        """Return (price, currency hint from the price expression)."""
        if transaction_type == TransactionType.OPTION_EXPIRED:
            return Decimal("0"), None

        for pattern in PRICE_PATTERNS:
            match = pattern.search(content)
            if not match:
                continue
            sign = (match.group(1) or "").upper()
            suffix = (match.group(3) or "").strip().upper()
            hint = None
            if sign == "US$" or suffix == "USD":
                hint = "USD"
            elif sign in ("C$", "CA$") or suffix == "CAD":
                hint = "CAD"
            return _to_decimal(match.group(2)), hint
        return None, None

    def _extract_account(self, content: str) -> str | None:
        match = ACCOUNT_FIELD_RE.search(content)
        if match:
            label = match.group(1).strip()
            token = ACCOUNT_TOKEN_RE.search(label)
            if token:
                value = token.group(1)
                return value.upper() if value.upper() in ("TFSA", "RRSP", "RESP", "LIRA", "RRIF") else value.title()
            return label
        match = REGISTERED_ACCOUNT_RE.search(content)
        return match.group(1) if match else None

    def _extract_currency(self, content: str, price_hint: str | None) -> tuple[str, bool]:
        match = CURRENCY_FIELD_RE.search(content)
        if match:
            return match.group(1).upper(), True
        if price_hint:
            return price_hint, True
        if "US$" in content:
            return "USD", True
        if "C$" in content or "CA$" in content:
            return "CAD", True
        return self.default_currency, False

    def _extract_datetime(self, content: str) -> tuple[date | None, time | None, str | None]:
        lines = content.splitlines()
        for label in DATE_LABELS:
            label_re = re.compile(rf"^\s*{label}\s*:(.*)$", re.IGNORECASE)
            for line in lines:
                match = label_re.match(line)
                if not match:
                    continue
                found_date = _parse_date(match.group(1))
                if found_date:
                    parsed_time = _parse_time(match.group(1))
                    if parsed_time:
                        return found_date, parsed_time[0], parsed_time[1]
                    return found_date, None, None

        for line in lines:
            if NON_TRADE_DATE_RE.search(line):
                continue
            found_date = _parse_date(line)
            if found_date:
                parsed_time = _parse_time(line)
                if parsed_time:
                    return found_date, parsed_time[0], parsed_time[1]
                return found_date, None, None
        return None, None, None

    @staticmethod
    def _match_decimal(pattern: re.Pattern, content: str) -> Decimal | None:
        match = pattern.search(content)
        return _to_decimal(match.group(1)) if match else None

    def _extract_first(self, patterns: list[re.Pattern], content: str) -> Decimal | None:
        for pattern in patterns:
            value = self._match_decimal(pattern, content)
            if value is not None:
                return value.quantize(Decimal("0.01"))
        return None
