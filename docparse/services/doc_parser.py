"""
CLI entry-point for the document parsing pipeline.

Usage
-----
    python -m docparse.services.doc_parser parse report.pdf [--mode auto] [--output report.md]
    python -m docparse.services.doc_parser parse scan.png --json
    python -m docparse.services.doc_parser cache-stats
    python -m docparse.services.doc_parser cache-cleanup
    python -m docparse.services.doc_parser evaluate predicted.md truth.md
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("easyocr").setLevel(logging.ERROR)
logger = logging.getLogger(__name__)


def cmd_parse(args: argparse.Namespace) -> None:
    from docparse.parsing.ocr import OcrUnavailableError
    from docparse.parsing.pipeline import ParsingError, get_parser

    file_path = Path(args.file)
    parser = get_parser()
    try:
        result = parser.parse(file_path, mode=args.mode)
    except (ParsingError, OcrUnavailableError) as exc:
        logger.error("Parsing %s failed: %s", file_path.name, exc)
        sys.exit(1)
    finally:
        parser.close()

    if args.json:
        output = result.model_dump_json(indent=2)
    else:
        output = result.final_text

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        logger.info("Wrote %d chars to %s.", len(output), args.output)
    else:
        print(output)

    if args.tables_csv and result.structured_document is not None:
        _write_tables_csv(result, Path(args.tables_csv), file_path.stem)

    meta = result.metadata
    print("\n══════════════ Parsing Summary ══════════════", file=sys.stderr)
    print(f"  File            : {file_path}", file=sys.stderr)
    print(f"  Method          : {result.parsing_method}", file=sys.stderr)
    print(f"  Mode            : {meta.get('parsing_mode', '?')}", file=sys.stderr)
    print(f"  Status          : {result.parsing_status.value}", file=sys.stderr)
    print(f"  Quality score   : {result.quality_score or 0.0:.3f}", file=sys.stderr)
    if result.structured_document is not None:
        print(f"  Pages           : {meta.get('page_count', 0)}/{meta.get('total_pages', 0)}", file=sys.stderr)
        print(f"  Elements        : {meta.get('element_count', 0)}", file=sys.stderr)
        print(f"  Tables          : {meta.get('table_count', 0)}", file=sys.stderr)
        print(f"  Compression     : {meta.get('compression_ratio', 0.0):.2f}x", file=sys.stderr)
        if meta.get("failed_page_numbers"):
            print(f"  Failed pages    : {meta['failed_page_numbers']}", file=sys.stderr)
    print(f"  Elapsed         : {meta.get('processing_time_ms', 0)}ms", file=sys.stderr)
    print("═════════════════════════════════════════════", file=sys.stderr)


def _write_tables_csv(result, out_dir: Path, stem: str) -> None:
    from docparse.parsing.tables import parse_markdown_table, rows_to_csv

    out_dir.mkdir(parents=True, exist_ok=True)
    written = 0
    for page, element in result.structured_document.elements():
        if not element.is_table():
            continue
        info = element.table_info
        if info is not None and info.rows:
            rows = ([info.headers] if info.headers else []) + info.rows
        else:
            rows = parse_markdown_table(element.md_text)
        if not rows:
            continue
        written += 1
        target = out_dir / f"{stem}_p{page.page_no}_t{written}.csv"
        target.write_text(rows_to_csv(rows), encoding="utf-8")
    logger.info("Exported %d tables to %s.", written, out_dir)


def cmd_cache_stats(args: argparse.Namespace) -> None:
    from docparse.parsing.cache import ParsingCache
    from docparse.parsing.config import parsing_settings

    cache = ParsingCache(ttl_hours=parsing_settings.cache_ttl_hours, cache_dir=parsing_settings.cache_dir)
    stats = cache.stats()
    print("\n══════════════ Parsing Cache Stats ══════════════")
    print(f"  Directory        : {parsing_settings.cache_dir}")
    print(f"  Documents        : {stats.total_documents}")
    print(f"  Complete         : {stats.complete_documents}")
    print(f"  Partial          : {stats.partial_documents}")
    print(f"  Successful pages : {stats.successful_pages}")
    print(f"  Failed pages     : {stats.failed_pages}")
    print("═════════════════════════════════════════════════")


def cmd_cache_cleanup(args: argparse.Namespace) -> None:
    from docparse.parsing.cache import ParsingCache
    from docparse.parsing.config import parsing_settings

    cache = ParsingCache(ttl_hours=parsing_settings.cache_ttl_hours, cache_dir=parsing_settings.cache_dir)
    if args.all:
        cache.clear()
        print("Cache cleared.")
    else:
        removed = cache.cleanup_expired()
        print(f"Removed {removed} expired cache entries.")


def cmd_evaluate(args: argparse.Namespace) -> None:
    from docparse.parsing.evaluation import evaluate_full
    from docparse.parsing.tables import find_header_row

    predicted = Path(args.predicted).read_text(encoding="utf-8")
    truth = Path(args.truth).read_text(encoding="utf-8")
    has_tables = find_header_row(predicted) is not None and find_header_row(truth) is not None
    result = evaluate_full(
        predicted,
        truth,
        predicted if has_tables else None,
        truth if has_tables else None,
        original_text=truth,
        compressed=predicted,
    )

    if args.json:
        print(json.dumps(
            {
                "character_accuracy": result.character_accuracy,
                "word_accuracy": result.word_accuracy,
                "teds_score": result.teds_score,
                "overall_score": result.overall_score,
                "compression_ratio": result.compression.compression_ratio,
                "information_retention": result.compression.information_retention,
            },
            indent=2,
        ))
        return

    print("\n══════════════ Evaluation ══════════════")
    print(f"  Character accuracy : {result.character_accuracy:.4f}")
    print(f"  Word accuracy      : {result.word_accuracy:.4f}")
    print(f"  TEDS               : {result.teds_score:.4f}{'' if has_tables else ' (no tables)'}")
    print(f"  Overall            : {result.overall_score:.4f}")
    print(f"  Compression        : {result.compression.compression_ratio:.2f}x")
    print(f"  Info retention     : {result.compression.information_retention:.4f}")
    print("════════════════════════════════════════")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Hybrid document parsing CLI",
        prog="python -m docparse.services.doc_parser",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # parse
    p_parse = sub.add_parser("parse", help="Parse a document to markdown")
    p_parse.add_argument("file", type=str, help="PDF, image, DOCX or text file")
    p_parse.add_argument(
        "--mode", choices=["simple", "ocr", "auto"], default=None,
        help="Parsing mode (default: auto, or ocr when forced by config)",
    )
    p_parse.add_argument("--output", type=str, default=None, help="Write the result here instead of stdout")
    p_parse.add_argument("--json", action="store_true", help="Emit the full ParsingResult as JSON")
    p_parse.add_argument("--tables-csv", type=str, default=None, help="Export every table as CSV into this directory")
    p_parse.set_defaults(func=cmd_parse)

    # cache-stats
    p_stats = sub.add_parser("cache-stats", help="Show page cache statistics")
    p_stats.set_defaults(func=cmd_cache_stats)

    # cache-cleanup
    p_cleanup = sub.add_parser("cache-cleanup", help="Remove expired cache entries")
    p_cleanup.add_argument("--all", action="store_true", help="Remove every entry, expired or not")
    p_cleanup.set_defaults(func=cmd_cache_cleanup)

    # evaluate
    p_eval = sub.add_parser("evaluate", help="Score a parsed output against ground truth")
    p_eval.add_argument("predicted", type=str, help="Parser output (markdown or text)")
    p_eval.add_argument("truth", type=str, help="Ground-truth file")
    p_eval.add_argument("--json", action="store_true", help="Print metrics as JSON")
    p_eval.set_defaults(func=cmd_evaluate)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
