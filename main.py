# -*- coding: utf-8 -*-
"""
Vehicle Make/Model Mapper

Maps every row of a source vehicle file to the matching row of a reference
file through a cascade: knowledge base -> learned rules -> fuzzy -> AI.
High-confidence matches feed the knowledge base and rule mining.

Run as a service:   python main.py serve
Map two CSV files:  python main.py map source.csv reference.csv \
                        --source-make Make --source-model Model \
                        --reference-make MAKE --reference-model MODEL \
                        --code CODE --output mapped.csv
"""
import argparse
import asyncio
import socket
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
import uvicorn

import settings
from exporter import export_csv, summarize
from file_parser import FileParseError, parse_file, parse_text
from learning import perform_learning
from llm_providers import LlmProvider, create_provider
from matcher import map_data
from mongodb_client import MongoKnowledgeStore, MongoRuleStore, test_connection
from settings import ColumnConfig, MappingOptions
from similarity import SIMILARITY_METRICS
from stores import InMemoryKnowledgeStore, InMemoryRuleStore, KnowledgeStore, RuleStore


# ============================================================================
# SERVICES
# ============================================================================

knowledge_store: Optional[KnowledgeStore] = None
rule_store: Optional[RuleStore] = None
provider: Optional[LlmProvider] = None
storage_backend = 'memory'
storage_error: Optional[str] = None


def open_services():
    """Connect the knowledge/rule stores and the reasoning provider."""
    global knowledge_store, rule_store, provider, storage_backend, storage_error

    storage_error = None
    connected = False
    if settings.MONGO_URI:
        try:
            print("Connecting to MongoDB...")
            knowledge_store = MongoKnowledgeStore()
            rule_store = MongoRuleStore()
            print(f"  Knowledge entries: {knowledge_store.count():,}")
            print(f"  Learned rules: {rule_store.count():,}")
            connected = True
        except Exception as e:
            storage_error = str(e)
            print(f"WARNING: MongoDB unavailable ({e}). Using in-memory stores for this session.")

    if connected:
        storage_backend = 'mongodb'
    else:
        knowledge_store = InMemoryKnowledgeStore()
        rule_store = InMemoryRuleStore()
        storage_backend = 'memory'

    try:
        provider = create_provider()
    except ValueError as e:
        print(f"WARNING: {e}. AI layer disabled.")
        provider = None
    if provider is None:
        print("  No LLM provider configured; the AI layer will be skipped.")
    else:
        print(f"  LLM provider: {provider.name} (web search: {'yes' if provider.supports_web_search else 'no'})")


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open stores and provider on startup when running via uvicorn."""
    open_services()
    yield


app = FastAPI(
    title="Vehicle Make/Model Mapper",
    description="Knowledge, rule, fuzzy and AI matching of vehicle make/model records",
    version=settings.VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class Columns(BaseModel):
    make: str
    model: str
    codes: List[str] = []


class Options(BaseModel):
    use_knowledge_layer: bool = True
    use_rule_layer: bool = True
    use_fuzzy_layer: bool = True
    use_ai_layer: bool = True
    fuzzy_threshold: float = settings.FUZZY_THRESHOLD_DEFAULT
    similarity_metric: str = settings.SIMILARITY_METRIC_DEFAULT
    semantic_batch_size: int = settings.SEMANTIC_LLM_BATCH_SIZE
    web_search_batch_size: int = settings.AI_WEB_SEARCH_BATCH_SIZE
    inter_batch_delay: float = settings.INTER_BATCH_DELAY_SECONDS


class MappingRequest(BaseModel):
    source_rows: List[Dict[str, Any]]
    reference_rows: List[Dict[str, Any]]
    source_columns: Columns
    reference_columns: Columns
    options: Options = Field(default_factory=Options)
    learn: bool = False


class MappingResponse(BaseModel):
    total: int
    matched: int
    status_counts: Dict[str, int]
    results: List[Dict[str, Any]]
    learning: Optional[Dict[str, Any]] = None


class ParseRequest(BaseModel):
    text: str
    name: str = 'upload.csv'


@app.get("/api/stats")
async def stats():
    """Get application status."""
    return {
        "status": "ready" if knowledge_store is not None else "loading",
        "version": settings.VERSION,
        "storage": storage_backend,
        "storage_error": storage_error,
        "knowledge_entries": knowledge_store.count() if knowledge_store else 0,
        "learned_rules": rule_store.count() if rule_store else 0,
        "llm_provider": provider.name if provider else None,
        "web_search": bool(provider and provider.supports_web_search),
    }


@app.post("/api/parse")
async def parse(request: ParseRequest):
    """Parse CSV text into headers and rows."""
    try:
        parsed = parse_text(request.text, request.name)
    except FileParseError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "name": parsed.name,
        "headers": parsed.headers,
        "rows": parsed.rows,
        "row_count": len(parsed.rows),
    }


@app.post("/api/map", response_model=MappingResponse)
async def map_records(request: MappingRequest):
    """Run the matching cascade over the posted rows."""
    try:
        source_columns = ColumnConfig(**request.source_columns.model_dump())
        reference_columns = ColumnConfig(**request.reference_columns.model_dump())
        options = MappingOptions(**request.options.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    knowledge = knowledge_store.get_all() if knowledge_store and options.use_knowledge_layer else {}
    rules = rule_store.get_all() if rule_store and options.use_rule_layer else []

    results = await map_data(
        request.source_rows,
        request.reference_rows,
        source_columns,
        reference_columns,
        options,
        knowledge=knowledge,
        rules=rules,
        provider=provider,
    )

    learning = None
    if request.learn:
        report = await perform_learning(results, provider, knowledge_store, rule_store, options)
        learning = report.to_dict()

    return MappingResponse(
        total=len(results),
        matched=sum(1 for r in results if r.status.is_match),
        status_counts=summarize(results),
        results=[r.to_dict() for r in results],
        learning=learning,
    )


# ============================================================================
# COMMAND LINE
# ============================================================================

def find_available_port(host: str, start_port: int = 8000, max_attempts: int = 10) -> Optional[int]:
    """First port from start_port that `host` can bind, or None after max_attempts."""
    for port in range(start_port, start_port + max_attempts):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((host, port))
            except OSError:
                continue
        return port
    return None


def serve(args) -> int:
    """Run the API server."""
    print("=" * 60)
    print(f"Vehicle Make/Model Mapper v{settings.VERSION}")
    print("=" * 60)

    port = args.port or find_available_port(args.host)
    if port is None:
        print(f"\nERROR: Could not find an available port on {args.host} (8000-8009).")
        print("Please close other applications using these ports and try again.")
        return 1

    if settings.MONGO_URI:
        print("\nTesting MongoDB connection...")
        conn_test = test_connection()
        if conn_test.get('connected'):
            print(f"  Connected to MongoDB: {conn_test.get('database')}")
        else:
            print(f"  WARNING: MongoDB connection failed: {conn_test.get('error')}")

    # Stores and provider are opened by the FastAPI lifespan hook
    print(f"\nStarting server at http://{args.host}:{port}")
    print("Press Ctrl+C to stop\n")

    uvicorn.run(app, host=args.host, port=port, log_level="warning")
    return 0


def run_mapping(args) -> int:
    """Map a source CSV against a reference CSV and write the results."""
    print("=" * 60)
    print(f"Vehicle Make/Model Mapper v{settings.VERSION}")
    print("=" * 60)

    try:
        source = parse_file(args.source)
        reference = parse_file(args.reference)
    except FileParseError as e:
        print(f"ERROR: {e}")
        return 1
    print(f"  Source: {source.name} ({len(source.rows):,} rows)")
    print(f"  Reference: {reference.name} ({len(reference.rows):,} rows)")

    try:
        source_columns = ColumnConfig(make=args.source_make, model=args.source_model)
        reference_columns = ColumnConfig(make=args.reference_make, model=args.reference_model,
                                         codes=tuple(args.code or ()))
        options = MappingOptions(
            use_knowledge_layer=not args.no_knowledge,
            use_rule_layer=not args.no_rules,
            use_fuzzy_layer=not args.no_fuzzy,
            use_ai_layer=not args.no_ai,
            fuzzy_threshold=args.fuzzy_threshold,
            similarity_metric=args.similarity,
        )
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1

    for label, parsed, columns in (('source', source, source_columns), ('reference', reference, reference_columns)):
        missing = [c for c in (columns.make, columns.model, *columns.codes) if c not in parsed.headers]
        if missing:
            print(f"ERROR: {label} file has no column(s): {', '.join(missing)}")
            print(f"  Available: {', '.join(parsed.headers)}")
            return 1

    print()
    open_services()

    total = len(source.rows)
    step = max(1, total // 20)

    def on_progress(result, index, count):
        done = index + 1
        if done == count or done % step == 0:
            print(f"  Processed {done:,}/{count:,}")

    knowledge = knowledge_store.get_all() if options.use_knowledge_layer else {}
    rules = rule_store.get_all() if options.use_rule_layer else []

    print(f"\nMapping {total:,} records (layers: {', '.join(options.enabled_layers) or 'none'})...")
    results = asyncio.run(map_data(
        source.rows, reference.rows, source_columns, reference_columns, options,
        knowledge=knowledge, rules=rules, provider=provider, on_progress=on_progress,
    ))

    matched = sum(1 for r in results if r.status.is_match)
    print(f"\nMatched {matched:,}/{total:,} records")
    print("\nResults:")
    for status, count in summarize(results).items():
        print(f"  {status}: {count:,}")

    if args.learn:
        report = asyncio.run(perform_learning(results, provider, knowledge_store, rule_store, options))
        print("\nLearning:")
        print(f"  Knowledge entries added: {report.knowledge_entries_added}")
        print(f"  Rules proposed: {report.rules_proposed}, saved: {report.rules_saved}, "
              f"rejected: {len(report.rejected_rules)}")
        for error in report.errors:
            print(f"  WARNING: {error}")

    written = export_csv(results, args.output, source_columns, reference_columns,
                         extra_columns=args.extra or ())
    print(f"\nWrote {written:,} rows to {args.output}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Vehicle make/model mapper")
    sub = parser.add_subparsers(dest='command')

    p_serve = sub.add_parser('serve', help="Run the HTTP API")
    p_serve.add_argument('--host', default='127.0.0.1')
    p_serve.add_argument('--port', type=int, default=None, help="Default: first free port from 8000")
    p_serve.set_defaults(func=serve)

    p_map = sub.add_parser('map', help="Map a source CSV against a reference CSV")
    p_map.add_argument('source', help="Source CSV file")
    p_map.add_argument('reference', help="Reference CSV file")
    p_map.add_argument('--source-make', required=True)
    p_map.add_argument('--source-model', required=True)
    p_map.add_argument('--reference-make', required=True)
    p_map.add_argument('--reference-model', required=True)
    p_map.add_argument('--code', action='append', help="Reference code column to carry (repeatable)")
    p_map.add_argument('--extra', action='append', help="Source column to copy into the output (repeatable)")
    p_map.add_argument('--output', default='mapped_results.csv')
    p_map.add_argument('--fuzzy-threshold', type=float, default=settings.FUZZY_THRESHOLD_DEFAULT)
    p_map.add_argument('--similarity', choices=sorted(SIMILARITY_METRICS), default=settings.SIMILARITY_METRIC_DEFAULT,
                       help="Metric for fuzzy model comparison")
    p_map.add_argument('--no-knowledge', action='store_true')
    p_map.add_argument('--no-rules', action='store_true')
    p_map.add_argument('--no-fuzzy', action='store_true')
    p_map.add_argument('--no-ai', action='store_true')
    p_map.add_argument('--learn', action='store_true', help="Update knowledge base and rules after mapping")
    p_map.set_defaults(func=run_mapping)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, 'func', None):
        # No subcommand: behave like the desktop app and start the server
        args = parser.parse_args(['serve'])
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
