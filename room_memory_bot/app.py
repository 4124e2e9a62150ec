from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any, Sequence

from .config import Settings
from .memory.consolidation import MemoryConsolidator
from .memory.factory import MemoryStore, build_memory_store
from .services.chat_client import ChatCompletionsClient, ChatCompletionsError
from .services.memory_digest import MemoryDigestSummarizer
from .services.profile_extractor import ProfileExtractor

logger = logging.getLogger("room_memory_bot")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


async def _cmd_info(store: MemoryStore, settings: Settings, args: argparse.Namespace) -> None:
    await store.database.ping()
    info = store.database.info()
    _print_json(
        {
            "db_path": info.db_path,
            "vector_mode": info.vector_mode,
            "embedding_dim": info.embedding_dim,
            "search_enabled": store.database.is_search_enabled(),
            "memories": await store.memories.count(),
        }
    )


async def _cmd_cleanup(store: MemoryStore, settings: Settings, args: argparse.Namespace) -> None:
    result = await store.memories.cleanup_expired_and_orphans()
    _print_json({"ok": True, "removed_memories": result.removed_memories, "removed_vectors": result.removed_vectors})


def _build_llm(settings: Settings) -> ChatCompletionsClient:
    return ChatCompletionsClient(
        api_key=settings.deepseek_api_key,
        model=settings.deepseek_model,
        timeout_seconds=settings.deepseek_timeout_seconds,
        temperature=settings.digest_temperature,
        base_url=settings.deepseek_base_url,
    )


async def _cmd_context(store: MemoryStore, settings: Settings, args: argparse.Namespace) -> None:
    context = await store.user_context(args.trip_code)
    _print_json(
        {
            "trip_code": context.trip_code,
            "profile_context": context.profile_context,
            "memory_context": context.memory_items(),
        }
    )


async def _cmd_setprofile(store: MemoryStore, settings: Settings, args: argparse.Namespace) -> None:
    llm = _build_llm(settings)
    await llm.start()
    try:
        extractor = ProfileExtractor(llm, max_input_chars=settings.profile_max_input_chars)
        profile = await store.apply_profile_command(args.trip_code, args.display_name, args.message, extractor)
    except (ValueError, ChatCompletionsError) as exc:
        _print_json({"ok": False, "error": str(exc)})
        return
    finally:
        await llm.close()
    if profile is None:
        _print_json({"ok": False, "error": f"message does not start with {settings.profile_command!r}"})
        return
    _print_json({"ok": True, "profile": profile.as_dict()})


async def _cmd_remember(store: MemoryStore, settings: Settings, args: argparse.Namespace) -> None:
    try:
        raw_output = json.loads(args.payload)
    except json.JSONDecodeError as exc:
        _print_json({"ok": False, "error": f"payload is not valid JSON: {exc}"})
        return
    stored = await store.store_extracted_memories(args.room_id, args.trip_code, args.display_name, raw_output)
    _print_json({"ok": True, "stored": stored})


async def _cmd_consolidate(store: MemoryStore, settings: Settings, args: argparse.Namespace) -> None:
    llm = _build_llm(settings)
    await llm.start()
    try:
        consolidator = MemoryConsolidator(
            store.memories,
            store.identities,
            MemoryDigestSummarizer(llm, temperature=settings.digest_temperature),
            source_min_importance=(
                settings.memory_digest_source_min_importance
                if args.source_min_importance is None
                else args.source_min_importance
            ),
            source_max_items_per_user=(
                settings.memory_digest_source_max_items_per_user
                if args.source_max_items_per_user is None
                else args.source_max_items_per_user
            ),
            prune_below_importance=(
                settings.memory_digest_prune_below_importance
                if args.prune_below_importance is None
                else args.prune_below_importance
            ),
        )
        report = await consolidator.run()
    finally:
        await llm.close()
    _print_json({"ok": True, **report.as_dict()})


_COMMANDS = {
    "info": _cmd_info,
    "cleanup": _cmd_cleanup,
    "context": _cmd_context,
    "setprofile": _cmd_setprofile,
    "remember": _cmd_remember,
    "consolidate": _cmd_consolidate,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="room-memory-bot", description="Room memory & identity store maintenance.")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("info", help="show database path, vector mode and memory count")
    sub.add_parser("cleanup", help="remove expired memories and orphan vectors")
    context = sub.add_parser("context", help="print the prompt context for one user")
    context.add_argument("trip_code")
    setprofile = sub.add_parser("setprofile", help="apply a setprofile chat message to a user profile")
    setprofile.add_argument("trip_code")
    setprofile.add_argument("display_name")
    setprofile.add_argument("message")
    remember = sub.add_parser("remember", help="store memory items extracted from a reply model output")
    remember.add_argument("trip_code")
    remember.add_argument("display_name")
    remember.add_argument("payload", help='JSON such as {"memory": {"items": [...]}}')
    remember.add_argument("--room-id", default=None)
    consolidate = sub.add_parser("consolidate", help="summarize memories into per-user digests, then prune")
    consolidate.add_argument("--source-min-importance", type=int, default=None)
    consolidate.add_argument("--source-max-items-per-user", type=int, default=None)
    consolidate.add_argument("--prune-below-importance", type=int, default=None)
    return parser


async def _run(settings: Settings, args: argparse.Namespace) -> None:
    store = build_memory_store(settings)
    try:
        await store.open(startup_cleanup=settings.memory_startup_cleanup)
        await _COMMANDS[args.command](store, settings, args)
    finally:
        await store.close()


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    settings = Settings.from_env()
    settings.validate(require_llm=args.command in {"consolidate", "setprofile"})
    try:
        asyncio.run(_run(settings, args))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")


if __name__ == "__main__":
    main()
