"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from email import policy
from email.parser import BytesParser
from email.utils import parsedate_to_datetime
from pathlib import Path

from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..errors import BrokerMailError
from ..ledger_client import LedgerClient
from ..pipeline import EmailPipeline
from ..schemas.email import RawEmail
from ..schemas.processing import ProcessingOptions
from ..schemas.review import (
    QueueFilter,
    ReviewAction,
    ReviewActionRequest,
    ReviewPriority,
    ReviewStatus,
)
from ..state_store import StateStore
from ..symbol_resolver import SymbolResolver

logger = logging.getLogger(__name__)

OUTCOME_ICONS = {
    "created": "✅",
    "queued": "📝",
    "skipped-duplicate": "⏭",
    "merged": "🔗",
    "rejected-previously": "🚫",
    "validated": "🔍",
    "failed": "❌",
}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="brokermail-ledger",
        description="Turn brokerage confirmation emails into portfolio ledger transactions",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init command
    init_parser = subparsers.add_parser("init", help="Write a default config file")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )

    # process command
    process_parser = subparsers.add_parser("process", help="Process .eml confirmation emails")
    process_parser.add_argument("files", nargs="+", type=Path, help="Email files (.eml)")
    process_parser.add_argument(
        "--config-id",
        type=str,
        help="Email configuration whose auto-insert setting applies",
    )
    process_parser.add_argument(
        "--portfolio",
        type=str,
        help="Ledger portfolio ID to use instead of mapping the account type",
    )
    process_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run every check but write nothing",
    )
    process_parser.add_argument(
        "--validate-only",
        action="store_true",
        help="Only parse the emails",
    )
    process_parser.add_argument(
        "--no-enhance",
        action="store_true",
        help="Never call the AI symbol resolver",
    )
    process_parser.add_argument(
        "--skip-duplicate-check",
        action="store_true",
        help="Skip content and time-window duplicate checks (fingerprint check still runs)",
    )
    process_parser.add_argument(
        "--json",
        action="store_true",
        help="Print results as JSON",
    )

    # queue command
    queue_parser = subparsers.add_parser("queue", help="List the manual review queue")
    queue_parser.add_argument(
        "--status",
        type=str,
        default=ReviewStatus.PENDING.value,
        choices=[s.value for s in ReviewStatus] + ["ALL"],
        help="Item status (default: PENDING)",
    )
    queue_parser.add_argument(
        "--priority",
        type=str,
        choices=[p.value for p in ReviewPriority],
        help="Only this priority",
    )
    queue_parser.add_argument("--symbol", type=str, help="Only this symbol")
    queue_parser.add_argument(
        "--tag", action="append", default=[], help="Only items with this tag (repeatable)"
    )
    queue_parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum items to list (default: 50)",
    )
    queue_parser.add_argument("--json", action="store_true", help="Print items as JSON")

    # queue-stats command
    subparsers.add_parser("queue-stats", help="Show review queue health")

    # reviewer actions
    for name, help_text in (
        ("approve", "Approve a review item and write it to the ledger"),
        ("reject", "Reject a review item"),
        ("escalate", "Escalate a review item"),
    ):
        action_parser = subparsers.add_parser(name, help=help_text)
        action_parser.add_argument("item_id", type=int, help="Review item ID")
        action_parser.add_argument(
            "--reviewer", type=str, default="cli", help="Reviewer name (default: cli)"
        )
        action_parser.add_argument(
            "--version",
            type=int,
            dest="expected_version",
            help="Item version you reviewed; the action fails if the item changed since",
        )
        action_parser.add_argument("--note", type=str, help="Resolution note")
        if name == "approve":
            action_parser.add_argument(
                "--set",
                action="append",
                default=[],
                metavar="FIELD=VALUE",
                help="Correct a field before approving (repeatable)",
            )

    # sweep command
    subparsers.add_parser("sweep", help="Expire and escalate review items past their SLA")

    # status command
    subparsers.add_parser("status", help="Show pipeline status and statistics")

    return parser


def load_email_file(path: Path) -> RawEmail:
    """Read an RFC 822 message into a RawEmail."""
    with open(path, "rb") as f:
        message = BytesParser(policy=policy.default).parse(f)

    plain_part = message.get_body(preferencelist=("plain",))
    html_part = message.get_body(preferencelist=("html",))

    received_at = datetime.now(timezone.utc)
    if message["date"]:
        try:
            received_at = parsedate_to_datetime(str(message["date"]))
        except (TypeError, ValueError):
            logger.warning(f"Unparseable Date header in {path}, using current time")
        if received_at.tzinfo is None:
            received_at = received_at.replace(tzinfo=timezone.utc)

    message_id = message["message-id"]
    return RawEmail(
        subject=str(message["subject"] or ""),
        from_email=str(message["from"] or ""),
        html_content=html_part.get_content() if html_part is not None else None,
        text_content=plain_part.get_content() if plain_part is not None else None,
        received_at=received_at,
        message_id=str(message_id).strip().strip("<>") if message_id else None,
    )


def build_pipeline(config: Config) -> EmailPipeline:
    """Wire the pipeline from configuration."""
    store = StateStore(config.state_db_path)
    ledger = LedgerClient(
        base_url=config.ledger.base_url,
        token=config.ledger.token,
        timeout=config.ledger.timeout_seconds,
        max_retries=config.ledger.max_retries,
    )
    resolver = SymbolResolver(config.resolver) if config.resolver.enabled else None
    return EmailPipeline(config, store, ledger, resolver=resolver)


def cmd_init(config_path: Path, force: bool) -> int:
    """Write a default config file."""
    if config_path.exists() and not force:
        print(f"❌ {config_path} already exists (use --force to overwrite)")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def cmd_process(
    config: Config, files: list[Path], options: ProcessingOptions, as_json: bool
) -> int:
    """Process email files."""
    pipeline = build_pipeline(config)

    emails = []
    for path in files:
        try:
            emails.append(load_email_file(path))
        except OSError as e:
            print(f"❌ Cannot read {path}: {e}")
            return 1

    if not as_json:
        print(f"📨 Processing {len(emails)} email(s)...")

    batch = pipeline.process_batch(emails, options)

    if as_json:
        print(json.dumps([r.to_dict() for r in batch.results], indent=2))
    else:
        for path, result in zip(files, batch.results):
            icon = OUTCOME_ICONS.get(result.outcome.value, "•")
            print(f"  {icon} {path.name}: {result.outcome.value}")
            candidate = result.candidate
            if candidate is not None and not candidate.is_placeholder:
                print(
                    f"     → {candidate.transaction_type.value} {candidate.quantity} "
                    f"{candidate.symbol or candidate.symbol_raw or '?'} @ {candidate.price} "
                    f"{candidate.currency} (confidence {candidate.confidence:.0%})"
                )
            if result.review_queue_id is not None:
                print(f"     → Review item #{result.review_queue_id}")
            if result.merged_into:
                print(f"     → Merged into {result.merged_into}")
            for error in result.errors:
                print(f"     ⚠️  {error}")
        print(
            f"\n✓ Created: {batch.created}, Queued: {batch.queued}, "
            f"Skipped: {batch.skipped}, Failed: {batch.failed}"
        )

    return 1 if batch.failed else 0


def cmd_queue(
    config: Config,
    status: str,
    priority: str | None,
    symbol: str | None,
    tags: list[str],
    limit: int,
    as_json: bool,
) -> int:
    """List review queue items."""
    pipeline = build_pipeline(config)
    items = pipeline.queue.list_queue(
        QueueFilter(
            status=None if status == "ALL" else ReviewStatus(status),
            priority=ReviewPriority(priority) if priority else None,
            symbol=symbol,
            tags=tags,
            limit=limit,
        )
    )

    if as_json:
        print(json.dumps([item.to_dict() for item in items], indent=2))
        return 0

    if not items:
        print("No review items")
        return 0

    print(f"\n📝 Review Queue ({len(items)} item(s))")
    print("=" * 60)
    for item in items:
        c = item.candidate
        print(
            f"  #{item.id} [{item.priority_label.value:>6}] {item.status.value:<8} "
            f"{c.transaction_type.value} {c.quantity or '?'} {c.symbol or c.symbol_raw or '?'} "
            f"@ {c.price or '?'}  conf={c.confidence:.0%}  v{item.version}"
        )
        if item.tags:
            print(f"      tags: {', '.join(item.tags)}")
    print()
    return 0


def cmd_queue_stats(config: Config) -> int:
    """Show queue health."""
    pipeline = build_pipeline(config)
    stats = pipeline.queue.get_stats()

    print("\n📝 Review Queue Health")
    print("=" * 40)
    print(f"  Pending:              {stats.pending}")
    for label in ("urgent", "high", "medium", "low"):
        print(f"    {label:<8}            {stats.by_priority.get(label, 0)}")
    print(f"  Oldest pending:       {stats.oldest_pending_at or '-'}")
    print(f"  Resolved (24h):       {stats.resolved_last_24h}")
    print(f"  Queued (24h):         {stats.queued_last_24h}")
    print(f"  Health score:         {stats.health_score}/100")
    print()
    return 0


def _parse_edits(assignments: list[str]) -> dict[str, str]:
    edits = {}
    for assignment in assignments:
        name, sep, value = assignment.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"Expected FIELD=VALUE, got '{assignment}'")
        edits[name.strip()] = value.strip()
    return edits


def cmd_review_action(
    config: Config,
    action: ReviewAction,
    item_id: int,
    reviewer: str,
    expected_version: int | None,
    note: str | None,
    assignments: list[str] | None = None,
) -> int:
    """Apply a reviewer action from the command line."""
    try:
        edits = _parse_edits(assignments or [])
    except ValueError as e:
        print(f"❌ {e}")
        return 1

    pipeline = build_pipeline(config)
    request = ReviewActionRequest(
        action=action,
        reviewer=reviewer,
        expected_version=expected_version,
        edits=edits,
        note=note,
    )
    try:
        item = pipeline.apply_review_action(item_id, request)
    except BrokerMailError as e:
        print(f"❌ {e}")
        return 1

    print(f"✓ Item #{item.id} is {item.status.value} (version {item.version})")
    if item.transaction_id:
        print(f"  → Ledger transaction {item.transaction_id}")
    return 0


def cmd_sweep(config: Config) -> int:
    """Run the review SLA sweep."""
    pipeline = build_pipeline(config)
    result = pipeline.queue.sweep()
    print(f"✓ Expired: {len(result.expired)}, Escalated: {len(result.escalated)}")
    return 0


def cmd_status(config: Config) -> int:
    """Show pipeline status."""
    store = StateStore(config.state_db_path)
    stats = store.get_stats()

    print("\n📊 Pipeline Status")
    print("=" * 40)
    print(f"  Emails seen:            {stats['emails_seen']}")
    print(f"  Deliveries:             {stats['deliveries']}")
    for status, count in sorted(stats["emails_by_status"].items()):
        print(f"    {status:<10}            {count}")
    print(f"  Transactions recorded:  {stats['transactions_recorded']}")
    print(f"  Fill groups:            {stats['fill_groups']}")
    print(f"  Pending review:         {stats['pending_review']}")
    print(f"  Rejected fingerprints:  {stats['rejected_fingerprints']}")
    print()

    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init":
        return cmd_init(parsed.config, parsed.force)

    # Load config
    try:
        config = load_config(parsed.config)
        errors = config.validate()
        if errors:
            raise ConfigValidationError(errors)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "process":
        options = ProcessingOptions(
            config_id=parsed.config_id,
            portfolio_id_hint=parsed.portfolio,
            skip_duplicate_check=parsed.skip_duplicate_check,
            enhance_symbols=not parsed.no_enhance,
            dry_run=parsed.dry_run,
            validate_only=parsed.validate_only,
        )
        return cmd_process(config, parsed.files, options, parsed.json)
    elif parsed.command == "queue":
        return cmd_queue(
            config,
            parsed.status,
            parsed.priority,
            parsed.symbol,
            parsed.tag,
            parsed.limit,
            parsed.json,
        )
    elif parsed.command == "queue-stats":
        return cmd_queue_stats(config)
    elif parsed.command in ("approve", "reject", "escalate"):
        return cmd_review_action(
            config,
            ReviewAction(parsed.command),
            parsed.item_id,
            parsed.reviewer,
            parsed.expected_version,
            parsed.note,
            getattr(parsed, "set", None),
        )
    elif parsed.command == "sweep":
        return cmd_sweep(config)
    elif parsed.command == "status":
        return cmd_status(config)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
