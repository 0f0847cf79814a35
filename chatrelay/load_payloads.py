"""
Batch import of provider webhook payloads from a directory.

Every ``*.json`` file is read in name order and applied exactly like a
signed POST /webhook delivery: messages first, then statuses. A file that
fails validation is logged and skipped; the rest are still applied.

Usage:
    chatrelay-load-payloads [DIRECTORY]
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pydantic import ValidationError as SchemaValidationError

from chatrelay.config import settings
from chatrelay.errors import ValidationError
from chatrelay.hub import FanoutHub
from chatrelay.logging_utils import setup_logging
from chatrelay.schemas import WebhookRequest
from chatrelay.service import ChatService
from chatrelay.storage import SqlMessageStore, init_db

logger = logging.getLogger(__name__)


@dataclass
class FileResult:
    name: str
    ok: bool
    ingested: int = 0
    duplicates: int = 0
    status_updates: int = 0
    not_found: int = 0
    error: Optional[str] = None


def read_payload(path: Path) -> WebhookRequest:
    """
    Raises:
        ValidationError: the file is not valid JSON or not a webhook delivery
    """
    try:
        return WebhookRequest.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON: {e}", details={"file": path.name}) from None
    except SchemaValidationError as e:
        raise ValidationError(
            f"Not a webhook delivery: {e.error_count()} errors",
            details={"file": path.name},
        ) from None


async def load_directory(chat: ChatService, directory: Path) -> list[FileResult]:
    """Apply every payload file of ``directory``; storage failures abort the run."""
    files = sorted(directory.glob("*.json"))
    if not files:
        logger.warning(f"No JSON payload files found in {directory}")
        return []

    logger.info(f"Found {len(files)} payload files in {directory}")
    results = []
    for path in files:
        try:
            outcome = await chat.handle_webhook(read_payload(path))
        except ValidationError as e:
            logger.error(f"Skipping {path.name}: {e.message}")
            results.append(FileResult(name=path.name, ok=False, error=e.message))
            continue

        logger.info(
            f"Processed {path.name}",
            extra={
                "file": path.name,
                "ingested": outcome.ingested,
                "duplicates": outcome.duplicates,
                "status_updates": outcome.status_updates,
                "not_found": outcome.not_found,
            },
        )
        results.append(FileResult(
            name=path.name,
            ok=True,
            ingested=outcome.ingested,
            duplicates=outcome.duplicates,
            status_updates=outcome.status_updates,
            not_found=outcome.not_found,
        ))
    return results


async def _run(directory: Path) -> list[FileResult]:
    init_db()
    chat = ChatService(SqlMessageStore(), FanoutHub())
    await chat.start()
    try:
        results = await load_directory(chat, directory)
        stats = await chat.stats()
        logger.info(
            f"Store now holds {stats['total_messages']} messages "
            f"in {stats['total_conversations']} conversations"
        )
        return results
    finally:
        await chat.stop()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="chatrelay-load-payloads",
        description="Apply provider webhook payload files to the message store",
    )
    parser.add_argument(
        "directory",
        nargs="?",
        default="sample_payloads",
        help="Directory of *.json webhook payloads (default: sample_payloads)",
    )
    args = parser.parse_args(argv)

    setup_logging(settings.LOG_LEVEL)
    directory = Path(args.directory)
    if not directory.is_dir():
        logger.error(f"Payload directory not found: {directory}")
        return 1

    results = asyncio.run(_run(directory))
    return 0 if all(result.ok for result in results) else 1


if __name__ == "__main__":
    sys.exit(main())
