from __future__ import annotations
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import yaml
from dotenv import load_dotenv

from viny_rag.config import EngineConfig, load_engine_config
from viny_rag.models import Document, SearchMode, SearchResult
from viny_rag.rag.prompts import SUMMARY_PROMPTS
from viny_rag.session import RetrievalSession

logger = logging.getLogger(__name__)


def run() -> None:
    """Main CLI entry point."""
    # Load environment variables first
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="viny-rag",
        description="Viny RAG - Local-first semantic search and Q&A over notes"
    )
    parser.add_argument("--config", default=None,
                        help="Path to YAML config (default: $VINY_RAG_CONFIG or environment)")
    parser.add_argument("--log-level", default=None,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Override configured log level")
    sub = parser.add_subparsers(dest="cmd", required=True)

    # Indexing commands
    reindex = sub.add_parser("reindex", help="Embed all documents (cached ones are reused)")
    reindex.add_argument("--docs", required=True, help="JSON/YAML file of documents")

    update = sub.add_parser("update", help="Re-embed only documents that changed")
    update.add_argument("--docs", required=True, help="JSON/YAML file of documents")

    # Search commands
    search = sub.add_parser("search", help="Search documents")
    search.add_argument("query", help="Search query")
    search.add_argument("--docs", required=True, help="JSON/YAML file of documents")
    search.add_argument("--mode", choices=[m.value for m in SearchMode], default="hybrid",
                        help="Search mode (default: hybrid)")
    search.add_argument("--limit", type=int, default=10, help="Max results to show")

    similar = sub.add_parser("similar", help="Find notes similar to a note")
    similar.add_argument("document_id", help="Document id")
    similar.add_argument("--docs", required=True, help="JSON/YAML file of documents")
    similar.add_argument("--limit", type=int, default=5, help="Max results to show")

    ask = sub.add_parser("ask", help="Ask a question about the documents")
    ask.add_argument("question", help="Question")
    ask.add_argument("--docs", required=True, help="JSON/YAML file of documents")
    ask.add_argument("--stream", action="store_true", help="Stream the answer as it is generated")

    # Note features
    tags = sub.add_parser("tags", help="Suggest tags for a note")
    tags.add_argument("document_id", help="Document id")
    tags.add_argument("--docs", required=True, help="JSON/YAML file of documents")
    tags.add_argument("--max", type=int, default=5, help="Max tags to suggest")
    tags.add_argument("--no-llm", action="store_true", help="Only use similar notes, skip the LLM")

    summarize = sub.add_parser("summarize", help="Summarize a note, or all notes with --all")
    summarize.add_argument("document_id", nargs="?", help="Document id")
    summarize.add_argument("--docs", required=True, help="JSON/YAML file of documents")
    summarize.add_argument("--style", choices=list(SUMMARY_PROMPTS),
                           default="brief", help="Summary style (default: brief)")
    summarize.add_argument("--all", dest="title", default=None, metavar="TITLE",
                           help="Summarize every note together under TITLE")

    # Cache commands
    sub.add_parser("stats", help="Show cache and model statistics")
    sub.add_parser("sweep", help="Delete expired query vectors")
    sub.add_parser("clear", help="Delete all cached embeddings")

    args = parser.parse_args()

    try:
        config = load_engine_config(args.config)
        setup_logging(config, args.log_level)
        logger.debug(f"Configuration: {config.log_redacted()}")

        if args.cmd == "reindex":
            asyncio.run(reindex_docs(config, args.docs))
        elif args.cmd == "update":
            asyncio.run(update_docs(config, args.docs))
        elif args.cmd == "search":
            asyncio.run(search_docs(config, args.docs, args.query, SearchMode(args.mode), args.limit))
        elif args.cmd == "similar":
            asyncio.run(similar_docs(config, args.docs, args.document_id, args.limit))
        elif args.cmd == "ask":
            asyncio.run(ask_docs(config, args.docs, args.question, args.stream))
        elif args.cmd == "tags":
            asyncio.run(tag_docs(config, args.docs, args.document_id, args.max, not args.no_llm))
        elif args.cmd == "summarize":
            asyncio.run(summarize_docs(config, args.docs, args.document_id, args.style, args.title))
        elif args.cmd == "stats":
            asyncio.run(show_stats(config))
        elif args.cmd == "sweep":
            asyncio.run(sweep_queries(config))
        elif args.cmd == "clear":
            asyncio.run(clear_cache(config))
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def setup_logging(config: EngineConfig, level_override: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level_override or config.logging.level),
        format=config.logging.format,
        stream=sys.stderr,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def load_documents(path: str | Path) -> list[Document]:
    """Read documents from a JSON or YAML file.

    Accepts a list of documents or a mapping with a ``documents`` list.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the content is not a document list
    """
    docs_path = Path(path)
    if not docs_path.exists():
        raise FileNotFoundError(f"Documents file not found: {docs_path}")

    text = docs_path.read_text(encoding="utf-8")
    if docs_path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)

    if isinstance(data, dict):
        data = data.get("documents")
    if not isinstance(data, list):
        raise ValueError(f"Expected a list of documents in {docs_path}")

    try:
        return [Document.model_validate(item) for item in data]
    except Exception as e:
        raise ValueError(f"Invalid document in {docs_path}: {e}") from e


def _print_results(results: list[SearchResult], limit: int) -> None:
    if not results:
        print("No matches")
        return
    for i, r in enumerate(results[:limit], 1):
        print(f"{i:2}. [{r.match_kind.value:8}] {r.score:.3f}  {r.document.title or r.document.id}")
        if r.matched_chunk:
            preview = " ".join(r.matched_chunk.split())
            print(f"      {preview[:100]}{'...' if len(preview) > 100 else ''}")


async def reindex_docs(config: EngineConfig, docs_path: str) -> None:
    documents = load_documents(docs_path)
    async with RetrievalSession(config) as session:
        counts = await session.reindex(documents)
    failed = [doc_id for doc_id, n in counts.items() if n == 0]
    print(f"✓ Embedded {len(counts)} documents ({sum(counts.values())} chunks)")
    if failed:
        print(f"  {len(failed)} documents produced no embeddings: {', '.join(failed)}")


async def update_docs(config: EngineConfig, docs_path: str) -> None:
    documents = load_documents(docs_path)
    async with RetrievalSession(config) as session:
        counts = await session.update(documents)
    print(f"✓ Updated {len(counts)} of {len(documents)} documents")


async def search_docs(config: EngineConfig, docs_path: str, query: str, mode: SearchMode, limit: int) -> None:
    documents = load_documents(docs_path)
    async with RetrievalSession(config) as session:
        results = await session.search(query, documents, mode)
    _print_results(results, limit)


async def similar_docs(config: EngineConfig, docs_path: str, document_id: str, limit: int) -> None:
    documents = load_documents(docs_path)
    async with RetrievalSession(config) as session:
        results = await session.find_similar(document_id, documents, limit)
    _print_results(results, limit)


async def ask_docs(config: EngineConfig, docs_path: str, question: str, stream: bool) -> None:
    documents = load_documents(docs_path)
    async with RetrievalSession(config) as session:
        if stream:
            sources, fragments = await session.stream(question, documents)
            async for fragment in fragments:
                print(fragment, end="", flush=True)
            print()
        else:
            result = await session.ask(question, documents)
            sources = result.sources
            if result.answer is not None:
                print(result.answer)
            else:
                print("(not a question; showing search results)")

    print("\nSources:")
    _print_results(sources, len(sources))


async def tag_docs(config: EngineConfig, docs_path: str, document_id: str, max_tags: int, use_llm: bool) -> None:
    documents = load_documents(docs_path)
    async with RetrievalSession(config) as session:
        suggestions = await session.suggest_tags(document_id, documents, max_tags=max_tags, use_llm=use_llm)
    if not suggestions:
        print("No tag suggestions")
        return
    for s in suggestions:
        print(f"  {s.confidence:.2f}  {s.tag:20}  {s.reason}")


async def summarize_docs(
    config: EngineConfig,
    docs_path: str,
    document_id: str | None,
    style: str,
    collection_title: str | None,
) -> None:
    documents = load_documents(docs_path)
    async with RetrievalSession(config) as session:
        if collection_title is not None:
            print(await session.summarize_collection(documents, collection_title))
            return
        document = next((d for d in documents if d.id == document_id), None)
        if document is None:
            raise ValueError(f"Document not found: {document_id}")
        summary = await session.summarize(document, style)

    print(summary.summary)
    if summary.key_points and style not in ("bullet-points", "key-insights"):
        print("\nKey points:")
        for point in summary.key_points:
            print(f"  - {point}")
    print(f"\n({summary.word_count} words, ~{summary.reading_time} min read"
          + (f"; extracted, LLM unavailable: {summary.error}" if summary.error else "") + ")")


async def show_stats(config: EngineConfig) -> None:
    async with RetrievalSession(config) as session:
        stats = await session.engine.get_stats()

    print(f"Cache backend:     {stats['backend']} ({'available' if stats['available'] else 'unavailable'})")
    print(f"Embeddings:        {stats['total_embeddings']}")
    print(f"Query vectors:     {stats['total_queries']}")
    print(f"Estimated size:    {stats['size'] / 1024:.1f} KiB")
    print(f"Oldest embedding:  {stats['oldest_embedding'] or '-'}")
    model = stats["model"]
    print(f"Model:             {model['provider']}/{model['name']} ({model['dimension']} dims)")


async def sweep_queries(config: EngineConfig) -> None:
    async with RetrievalSession(config) as session:
        removed = await session.cache.cleanup_expired_queries()
    print(f"✓ Removed {removed} expired query vectors")


async def clear_cache(config: EngineConfig) -> None:
    async with RetrievalSession(config) as session:
        await session.engine.clear_embeddings()
    print("✓ Cache cleared")
