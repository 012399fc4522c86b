"""
Bulk listing ingest from the command line.

Reads every image in a directory, runs it through the pipeline
(compress -> upload -> group -> enhance -> analyse) and writes the resulting
drafts to drafts.json. With --save, each draft is then assigned to a user and
date and persisted to the listing store in review order.
"""

import argparse
import asyncio
import logging
import time
from dataclasses import replace
from pathlib import Path

import orjson

from compressor import RawPhoto
from config import Settings
from errors import ReviewError
from models import DraftStatus, ItemType, ProductDraft, normalize_item_type
from pipeline import Mode, Pipeline, PipelineRun, RunMetrics, Stage
from review import ReviewCursor
from services import ServiceClient

logger = logging.getLogger(__name__)

OUTPUT_FILE = Path(__file__).parent / "drafts.json"


def load_photos(directory: Path) -> list[RawPhoto]:
    """Every regular file in the directory, sorted by name. Non-images are filtered by the run."""
    files = sorted(p for p in directory.iterdir() if p.is_file())
    logger.info(f"Found {len(files)} files in {directory}")
    return [RawPhoto.from_path(p) for p in files]


async def save_all(
    cursor: ReviewCursor,
    target_user_id: str,
    scheduled_date: str,
    scheduled_time: str | None,
) -> tuple[int, int]:
    """Assign and save every draft in review order. Failed drafts are skipped.

    Returns (saved, failed).
    """
    saved = failed = 0
    while not cursor.done:
        i = cursor.index
        cursor.assign(i, target_user_id=target_user_id, scheduled_date=scheduled_date, scheduled_time=scheduled_time)
        try:
            await cursor.save(i)
            saved += 1
        except ReviewError as e:
            logger.error(f"  Could not save product {i + 1}: {e}")
            failed += 1
            cursor.skip(i)
    return saved, failed


def print_drafts(drafts: list[ProductDraft]) -> None:
    print(f"\n{'='*60}")
    print(f"Assembled {len(drafts)} product drafts:")
    print(f"{'='*60}")

    for d in drafts:
        f = d.form
        print(f"\n  {f.title or d.suggested_name}")
        print(f"    Group:     {d.group_id} ({len(d.images)} photos)")
        print(f"    Type:      {f.item_type.value}")
        print(f"    Brand:     {f.brand or '-'}  Model: {f.model or '-'}  Year: {f.model_year or '-'}")
        print(f"    Condition: {f.condition_rating}")
        print(f"    Price:     ${f.price}", end="")
        if f.original_rrp:
            print(f" (RRP ${f.original_rrp:.0f})", end="")
        print()
        if d.cover:
            print(f"    Cover:     {d.cover.card_url}")
        if not d.analysed:
            print("    Analysis:  failed, defaults used")
        if d.status != DraftStatus.PENDING:
            print(f"    Status:    {d.status.value}" + (f" ({d.listing_id})" if d.listing_id else ""))


def print_report(run: PipelineRun, metrics: RunMetrics, drafts: list[ProductDraft], wall_clock: float) -> None:
    """Print a stage-by-stage ingest report."""
    print(f"\n{'='*70}")
    print("INGEST REPORT")
    print(f"{'='*70}")

    # ── Photos ───────────────────────────────────────────────────────
    print(f"\n── Photos ──")
    print(f"  Uploaded:            {len(run.assets)}")
    print(f"  Compressed:          {metrics.photos_compressed}")
    if metrics.bytes_before:
        saved_pct = (1 - metrics.bytes_after / metrics.bytes_before) * 100
        print(f"  Bytes on the wire:   {metrics.bytes_before / 1024:.0f}KB -> {metrics.bytes_after / 1024:.0f}KB "
              f"({saved_pct:.0f}% saved)")

    # ── Grouping ─────────────────────────────────────────────────────
    print(f"\n── Grouping ──")
    print(f"  Mode:                {run.mode.value}")
    print(f"  Products:            {len(drafts)}")
    if run.mode == Mode.BULK:
        print(f"  Source:              {'fallback (one per photo)' if metrics.grouping_fallback else 'grouping service'}")
        for g in run.groups:
            print(f"    {g.id:<15} {len(g.photo_indexes):>3} photos  conf {g.confidence:.2f}  {g.suggested_name}")

    # ── Enrichment ───────────────────────────────────────────────────
    print(f"\n── Enrichment ──")
    if run.enhance_covers:
        print(f"  Covers enhanced:     {metrics.enhancements_ok}/{metrics.enhancements_ok + metrics.enhancements_failed}")
    else:
        print("  Covers enhanced:     off")
    n = metrics.analyses_ok + metrics.analyses_failed
    print(f"  Analyses succeeded:  {metrics.analyses_ok}/{n}")

    by_type: dict[str, int] = {}
    for d in drafts:
        by_type[d.form.item_type.value] = by_type.get(d.form.item_type.value, 0) + 1
    for item_type, count in sorted(by_type.items(), key=lambda x: -x[1]):
        print(f"    {item_type:<15} {count}")

    # ── Timing ───────────────────────────────────────────────────────
    print(f"\n── Timing ──")
    print(f"  Wall clock (total):  {wall_clock:.2f}s")
    print(f"  {'Compress':>10} {'Upload':>9} {'Group':>9} {'Enhance':>9} {'Analyse':>9} {'Pipeline':>10}")
    print(f"  {'-'*61}")
    print(f"  {metrics.compress_time:>9.2f}s {metrics.upload_time:>8.2f}s {metrics.group_time:>8.2f}s "
          f"{metrics.enhance_time:>8.2f}s {metrics.analyse_time:>8.2f}s {metrics.total_time:>9.2f}s")

    if drafts:
        per_product = metrics.total_time / len(drafts)
        print(f"\n  Avg time per product: {per_product:.2f}s")
        print(f"  Est. 100 products:    {per_product * 100:.0f}s ({per_product * 100 / 60:.1f}min)")

    print(f"\n{'='*70}")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Turn a folder of photos into marketplace listing drafts.")
    parser.add_argument("photos", type=Path, help="directory of photos")
    parser.add_argument("--mode", choices=[m.value for m in Mode], default=Mode.BULK.value)
    parser.add_argument("--enhance", action="store_true", help="enhance each product's cover photo")
    parser.add_argument("--category", help="item type hint for analysis (bike, part, apparel)")
    parser.add_argument("--concurrency", type=int, help="override upload and analysis concurrency")
    parser.add_argument("--out", type=Path, default=OUTPUT_FILE)
    parser.add_argument("--save", action="store_true", help="persist every draft after assembly")
    parser.add_argument("--target-user", default="")
    parser.add_argument("--schedule-date", default="", help="YYYY-MM-DD in the configured time zone")
    parser.add_argument("--schedule-time", default=None, help="HH:MM, defaults to 09:00")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    category: ItemType | None = None
    if args.category:
        category = normalize_item_type(args.category)
        if category is None:
            logger.error(f"Unknown category '{args.category}'")
            return 2
    if args.save and not (args.target_user and args.schedule_date):
        logger.error("--save needs --target-user and --schedule-date")
        return 2

    settings = Settings.from_env()
    if args.concurrency:
        settings = replace(settings, upload_concurrency=args.concurrency, analysis_concurrency=args.concurrency)

    run = PipelineRun(mode=Mode(args.mode), enhance_covers=args.enhance, category=category)
    run.add_photos(load_photos(args.photos))
    if not run.photos:
        logger.error(f"No images found in {args.photos}")
        return 1

    t_wall_start = time.monotonic()
    async with ServiceClient(settings) as client:
        await Pipeline(client, settings).execute(run)
        wall_clock = time.monotonic() - t_wall_start

        if run.stage != Stage.REVIEWING:
            logger.error(f"Run failed: {run.error}")
            return 1

        # Keep our own handles: finishing the review resets the run
        metrics, cursor, drafts = run.metrics, run.cursor, run.drafts
        print_report(run, metrics, drafts, wall_clock)

        if args.save:
            saved, failed = await save_all(cursor, args.target_user, args.schedule_date, args.schedule_time)
            logger.info(f"Saved {saved} products, {failed} failed")

    print_drafts(drafts)

    args.out.write_bytes(orjson.dumps([d.model_dump(mode="json", by_alias=True) for d in drafts],
                                      option=orjson.OPT_INDENT_2))
    logger.info(f"Wrote {len(drafts)} drafts to {args.out}")
    return 0


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    raise SystemExit(asyncio.run(main()))
