"""Command line interface for docqa.

Usage:
    docqa ingest ./documents              # Incremental ingest
    docqa ingest ./documents --rebuild    # Drop the collection first
    docqa ask "How do I rotate the keys?" # One-shot question
    docqa stats                           # Collections and record counts
    docqa check                           # Validate endpoints and models
    docqa watch ./documents               # Re-ingest on file changes
"""
import argparse
import asyncio
import signal
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import httpx
import structlog

from docqa import config
from docqa.errors import DocQAError
from docqa.log import configure_logging
from docqa.models import BatchIngestReport
from docqa.rag.loader import DocumentLoader
from docqa.rag.orchestrator import RetrievalOrchestrator
from docqa.rag.watcher import DocumentWatcher

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, source_id: str):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {source_id[-30:]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, report: BatchIngestReport):
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        title = "Ingestion Cancelled" if report.cancelled else "Ingestion Complete!"
        print(f"{'=' * 60}")
        print(f"  {title}")
        print(f"{'=' * 60}\n")
        print(f"  📁 Documents ingested:   {report.documents_succeeded}")
        print(f"  ❌ Documents failed:     {report.documents_failed}")
        print(f"  ⏭️  Documents skipped:    {report.documents_skipped}")
        print(f"  📝 Chunks written:       {report.chunks_written}")
        print(f"  ⏱️  Time elapsed:         {elapsed_seconds:.1f}s")

        if report.chunks_written > 0 and elapsed_seconds > 0:
            rate = report.chunks_written / elapsed_seconds
            print(f"  ⚡ Indexing rate:        {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        for source_id, error in sorted(report.failures.items()):
            print(f"  ⚠️  {source_id}: {error}")
        if report.failures:
            print()


@contextmanager
def _on_interrupt(event: asyncio.Event):
    """Set ``event`` on Ctrl+C instead of raising KeyboardInterrupt."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, event.set)
    except (NotImplementedError, RuntimeError):
        # Not available on this platform or thread; Ctrl+C raises as usual
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def _build_orchestrator(args: argparse.Namespace) -> RetrievalOrchestrator:
    return RetrievalOrchestrator.from_config(
        index_dir=args.index_dir,
        collection=args.collection,
    )


async def cmd_ingest(args: argparse.Namespace) -> int:
    loader = DocumentLoader(args.directory)
    orchestrator = _build_orchestrator(args)
    collection = orchestrator.collection

    print("\n📋 Configuration:")
    print(f"   Documents directory: {loader.root_dir}")
    print(f"   Collection:          {collection}")
    print(f"   Embedding model:     {orchestrator.embedder.model}")
    print(f"   Chunk size:          {orchestrator.chunker.chunk_size} tokens")
    print(f"   Chunk overlap:       {orchestrator.chunker.chunk_overlap} tokens")

    try:
        documents = list(loader.load_all())

        if args.rebuild:
            removed = await orchestrator.vector_store.drop_collection(collection)
            print(f"\n⚠️  Rebuild mode: removed {removed} existing record(s)")

        progress = ProgressReporter(verbose=args.verbose)
        progress.start(f"{'Rebuilding' if args.rebuild else 'Ingesting'} {len(documents)} document(s)")

        cancel_event = asyncio.Event()
        with _on_interrupt(cancel_event):
            report = await orchestrator.ingest_documents(
                documents,
                collection=collection,
                cancel_event=cancel_event,
                progress_callback=progress.update,
            )

        progress.finish(report)
    finally:
        await orchestrator.aclose()

    if report.cancelled:
        print("⚠️  Ingestion cancelled by user.\n")
        return 1
    if report.documents_failed > 0:
        print(f"⚠️  Warning: {report.documents_failed} document(s) failed to ingest.\n")
        return 1

    print(f"✅ Index ready at: {orchestrator.vector_store.index_dir}\n")
    return 0


async def cmd_ask(args: argparse.Namespace) -> int:
    orchestrator = _build_orchestrator(args)
    try:
        if args.stream:
            streaming = await orchestrator.stream_answer(
                args.question, top_k=args.top_k, min_score=args.min_score
            )
            async for fragment in streaming:
                print(fragment, end="", flush=True)
            print()
            results = streaming.results
        else:
            answer = await orchestrator.answer_query(
                args.question, top_k=args.top_k, min_score=args.min_score
            )
            print(answer.answer)
            results = answer.results
    finally:
        await orchestrator.aclose()

    if results:
        print("\nSources:")
        for result in results:
            print(f"  [{result.rank}] {result.source} (score {result.score:.3f})")
    else:
        print("\n(no relevant context found)")
    return 0


async def cmd_stats(args: argparse.Namespace) -> int:
    orchestrator = _build_orchestrator(args)
    try:
        stats = orchestrator.vector_store.get_stats()
    finally:
        await orchestrator.aclose()

    print(f"\nIndex directory: {stats['index_dir']}")
    if not stats["collections"]:
        print("No collections yet.\n")
        return 0

    for name, info in stats["collections"].items():
        print(
            f"  {name:<24} {info['vector_count']:>8} records  "
            f"dim={info['dimension']}  model={info['embedding_model']}"
        )
    print()
    return 0


async def cmd_check(args: argparse.Namespace) -> int:
    orchestrator = _build_orchestrator(args)
    errors = []

    try:
        for label, client in (
            ("Embedding", orchestrator.embedder),
            ("Generation", orchestrator.generator),
        ):
            try:
                models = await client.list_models()
            except httpx.HTTPError as e:
                print(f"✗ {label} endpoint unreachable at {client.base_url}: {e}")
                errors.append(f"{label} endpoint unreachable")
                continue

            print(f"✓ {label} endpoint reachable at {client.base_url}")
            if client.model in models or f"{client.model}:latest" in models:
                print(f"✓ {label} model available: {client.model}")
            else:
                print(f"✗ {label} model missing: {client.model}")
                errors.append(f"Missing {label.lower()} model: {client.model}")

        try:
            dimension = await orchestrator.embedder.detect_dimension()
            print(f"✓ Embedding API working (dimension: {dimension})")
        except DocQAError as e:
            print(f"✗ Embedding API test failed: {e}")
            errors.append("Embedding API test failed")
    finally:
        await orchestrator.aclose()

    if errors:
        print(f"\nFound {len(errors)} error(s):")
        for i, error in enumerate(errors, 1):
            print(f"  {i}. {error}")
        return 1

    print("\nAll checks passed! ✨")
    return 0


async def cmd_watch(args: argparse.Namespace) -> int:
    orchestrator = _build_orchestrator(args)
    watcher = DocumentWatcher(
        orchestrator.pipeline,
        documents_dir=args.directory,
        collection=orchestrator.collection,
    )
    stop_event = asyncio.Event()

    try:
        await watcher.start()
        print(f"👀 Watching {watcher.documents_dir} (Ctrl+C to stop)")
        with _on_interrupt(stop_event):
            await stop_event.wait()
    finally:
        watcher.stop()
        await orchestrator.aclose()
    return 0


COMMANDS = {
    "ingest": cmd_ingest,
    "ask": cmd_ask,
    "stats": cmd_stats,
    "check": cmd_check,
    "watch": cmd_watch,
}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--collection",
        default=None,
        help=f"Collection name (default: {config.DEFAULT_COLLECTION})",
    )
    common.add_argument(
        "--index-dir",
        type=Path,
        default=None,
        help=f"Index directory (default: {config.INDEX_DIR})",
    )
    common.add_argument(
        "--log-level",
        default=None,
        help=f"Log level (default: {config.LOG_LEVEL})",
    )

    parser = argparse.ArgumentParser(
        prog="docqa",
        description="Question answering over your own documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Usage:", 1)[1],
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", parents=[common], help="Ingest a directory")
    ingest.add_argument("directory", type=Path, help="Directory of .txt/.md files")
    ingest.add_argument(
        "--rebuild",
        action="store_true",
        help="Drop the collection before ingesting",
    )
    ingest.add_argument("--verbose", "-v", action="store_true", help="One progress line per document")

    ask = subparsers.add_parser("ask", parents=[common], help="Ask a question")
    ask.add_argument("question")
    ask.add_argument("--top-k", type=int, default=None, help=f"Results to retrieve (default: {config.RETRIEVAL_TOP_K})")
    ask.add_argument("--min-score", type=float, default=None, help=f"Relevance threshold (default: {config.MIN_SCORE})")
    ask.add_argument("--stream", action="store_true", help="Print the answer as it is generated")

    subparsers.add_parser("stats", parents=[common], help="Show collections")
    subparsers.add_parser("check", parents=[common], help="Validate endpoints and models")

    watch = subparsers.add_parser("watch", parents=[common], help="Re-ingest documents on change")
    watch.add_argument(
        "directory",
        type=Path,
        nargs="?",
        default=None,
        help=f"Directory to watch (default: {config.DOCUMENTS_DIR})",
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the ``docqa`` console script."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        return asyncio.run(COMMANDS[args.command](args))
    except KeyboardInterrupt:
        print("\n\n⚠️  Cancelled by user.\n")
        return 1
    except FileNotFoundError as e:
        print(f"\n❌ Error: {e}\n")
        return 1
    except DocQAError as e:
        print(f"\n❌ Error: {e}\n")
        logger.error("cli_command_failed", command=args.command, error=str(e), error_type=type(e).__name__)
        return 1


if __name__ == "__main__":
    sys.exit(main())
