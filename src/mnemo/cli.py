"""
CLI entry point.

Commands:
- init: Initialize data directory and database
- health: Check provider connectivity and embedding dimension
- context USER SESSION MESSAGE: Print the assembled working context
- stats USER: Show memory statistics for a user
- extract USER [SESSION]: Run one semantic extraction batch
- clear USER: Delete all memories of a user

Flags:
- --debug: Enable debug logging to file
"""

import asyncio
import json
import logging
import sys

from mnemo.core.config import Settings, get_settings
from mnemo.core.logging import get_logger, setup_logging

USAGE = """Usage: mnemo [--debug] <command> [args]
Commands:
  init                          create data directory and database
  health                        check providers and embedding dimension
  context USER SESSION MESSAGE  print the working context for MESSAGE
  stats USER                    show memory statistics
  extract USER [SESSION]        run one extraction batch
  clear USER                    delete all memories of USER
Flags: --debug (enable debug logging to data/mnemo.log)"""


def main() -> int:
    """Main entry point."""
    settings = get_settings()

    # Parse --debug flag (enables verbose DEBUG traces)
    debug_mode = "--debug" in sys.argv
    if debug_mode:
        sys.argv.remove("--debug")

    log_level = logging.DEBUG if debug_mode else logging.INFO
    log_file = settings.data_dir / "mnemo.log"
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    setup_logging(level=log_level, log_file=log_file)
    logger = get_logger("cli")

    if len(sys.argv) < 2:
        print(USAGE)
        return 1

    command, args = sys.argv[1], sys.argv[2:]

    if command == "init":
        return asyncio.run(_init(settings))

    if command == "health":
        return asyncio.run(_health_check(settings))

    if command == "context" and len(args) >= 3:
        return asyncio.run(_context(settings, args[0], args[1], " ".join(args[2:])))

    if command == "stats" and len(args) == 1:
        return asyncio.run(_stats(settings, args[0]))

    if command == "extract" and len(args) in (1, 2):
        return asyncio.run(_extract(settings, args[0], args[1] if len(args) == 2 else None))

    if command == "clear" and len(args) == 1:
        return asyncio.run(_clear(settings, args[0]))

    logger.debug(f"Rejected command line: {sys.argv[1:]}")
    print(f"Unknown command or wrong arguments: {' '.join(sys.argv[1:])}")
    print(USAGE)
    return 1


async def _init(settings: Settings) -> int:
    """Create the data directory and database schema."""
    from mnemo.memory.sqlite import open_backends

    settings.data_dir.mkdir(parents=True, exist_ok=True)
    db, _, _ = await open_backends(settings.db_path)
    await db.close()
    get_logger("cli").info(f"Initialized database: {settings.db_path}")
    print(f"Created: {settings.db_path}")
    return 0


async def _health_check(settings: Settings) -> int:
    """Check provider health and embedding dimension."""
    from mnemo.context.service import create_service

    print("Checking providers...")
    service = await create_service(settings)
    try:
        ok = True
        for name, healthy in (await service.health()).items():
            print(f"  {name}: {'OK' if healthy else 'UNAVAILABLE'}")
            ok = ok and healthy
        try:
            await service.embedder.validate_dimensions()
            print(f"  embedding dimension: {settings.embedding_dimensions} OK")
        except Exception as e:
            print(f"  embedding dimension: FAILED ({e})")
            ok = False
        return 0 if ok else 1
    finally:
        await service.close()


async def _context(settings: Settings, user_id: str, session_id: str, message: str) -> int:
    """Print the working context assembled for a message."""
    from mnemo.context.service import create_service

    service = await create_service(settings)
    try:
        context = await service.get_context(
            user_id, session_id, message, timeout=settings.request_timeout_seconds
        )
    except Exception as e:
        get_logger("cli").error(f"Context assembly failed: {e}", exc_info=True)
        print(f"Error: {e}")
        return 1
    finally:
        await service.close()

    print(context.compressed_content)
    print("-" * 40)
    print(
        f"topic={context.current_topic!r} tokens={context.token_count}/{context.token_budget} "
        f"memories={len(context.memories)} ratio={context.compression_ratio:.2f}"
    )
    for warning in context.warnings:
        print(f"warning: {warning}")
    return 0


async def _stats(settings: Settings, user_id: str) -> int:
    from mnemo.context.service import create_service

    service = await create_service(settings)
    try:
        print(json.dumps(await service.stats(user_id), indent=2))
    finally:
        await service.close()
    return 0


async def _extract(settings: Settings, user_id: str, session_id: str | None) -> int:
    """Run one extraction batch in the foreground."""
    from mnemo.context.service import create_service

    service = await create_service(settings)
    try:
        result = await service.extract_now(user_id, session_id)
    finally:
        await service.close()

    stats = result.stats
    print(
        f"processed={stats.processed} accepted={stats.accepted} created={stats.created} "
        f"updated={stats.updated} rejected={stats.rejected_low_confidence} "
        f"invalid={stats.invalid} parse_failures={stats.parse_failures} "
        f"({stats.processing_ms:.0f} ms)"
    )
    for memory in result.created:
        print(f"  + [{memory.category}] {memory.concept}: {memory.description}")
    return 0


async def _clear(settings: Settings, user_id: str) -> int:
    from mnemo.context.service import create_service

    service = await create_service(settings)
    try:
        counts = await service.clear_user(user_id)
    finally:
        await service.close()
    print(f"Deleted {counts['episodic']} episodic and {counts['semantic']} semantic memories")
    return 0


if __name__ == "__main__":
    sys.exit(main())
