"""Collection CLI commands."""

import json

from vocabimages.app import Pipeline
from vocabimages.collection.orchestrator import CollectOptions
from vocabimages.errors import CollectionAlreadyActive, InvalidCollectOptions, ItemNotFound, NoPendingItems
from vocabimages.jobs.handlers import CATEGORY_QUEUE, ITEM_QUEUE
from vocabimages.jobs.planner import PlanOptions

from .common import load_settings


def _collect_options(args) -> CollectOptions:
    return CollectOptions(
        target_count=args.target,
        sources=args.sources.split(",") if args.sources else None,
        min_quality_score=args.min_quality,
        use_ai_generation=not args.no_ai,
        force_restart=args.force,
    )


def cmd_collect_item(args):
    """Collect images for one item in this process."""
    try:
        options = _collect_options(args)
    except InvalidCollectOptions as e:
        print(f"Error: {e}")
        return 1

    pipeline = Pipeline(load_settings(args))
    try:
        item = pipeline.items.find_item(args.category, args.item_id)
    except ItemNotFound as e:
        print(str(e))
        pipeline.close()
        return 1

    try:
        result = pipeline.orchestrator.collect(item.key, options)
    finally:
        pipeline.close()

    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.error is None else 1


def cmd_collect_category(args):
    """Collect images for every pending item of a category through the job queues."""
    settings = load_settings(args)
    try:
        collect = _collect_options(args)
    except InvalidCollectOptions as e:
        print(f"Error: {e}")
        return 1

    options = PlanOptions(
        item_ids=args.items.split(",") if args.items else None,
        force_restart=args.force,
        batch_size=args.batch_size or settings.batch_size,
        batch_delay=settings.batch_delay if args.batch_delay is None else args.batch_delay,
        collect=collect,
    )

    with Pipeline(settings) as pipeline:
        pipeline.scheduler.on("progress", _print_progress)
        try:
            ticket = pipeline.planner.plan_category_collection(args.category, options)
        except (NoPendingItems, CollectionAlreadyActive) as e:
            print(str(e))
            return 1

        print(f"Collecting {len(ticket.items)} items in {args.category} (job {ticket.job_id})")
        ticket.wait()

        for queue in (CATEGORY_QUEUE, ITEM_QUEUE):
            counts = pipeline.scheduler.counts(queue)
            print(f"{queue}: " + ", ".join(f"{k}={v}" for k, v in counts.items()))

        if ticket.job.result:
            print(json.dumps(ticket.job.result, indent=2))
            return 0 if ticket.job.result["failed"] == 0 else 2

        print(f"Category job failed: {ticket.job.error}")
        return 1


def cmd_reanalyze(args):
    """Score the stored images of one item again."""
    pipeline = Pipeline(load_settings(args))
    try:
        item = pipeline.items.find_item(args.category, args.item_id)
        rescored = pipeline.orchestrator.reanalyze(item.key)
    except ItemNotFound as e:
        print(str(e))
        return 1
    finally:
        pipeline.close()

    for candidate in rescored:
        print(f"{candidate.source_provider}/{candidate.source_id}: {candidate.quality_score.overall}")
    return 0


def _print_progress(event):
    progress = event.data.get("progress")
    if event.job.queue == CATEGORY_QUEUE and isinstance(progress, dict):
        print(f"  {progress['percent']}% ({progress['processed']}/{progress['total']})")


def _add_collect_arguments(parser):
    parser.add_argument("--target", type=int, help="Approved images wanted per item")
    parser.add_argument("--sources", help="Comma-separated source names, in search order")
    parser.add_argument("--min-quality", type=float, help="Reject candidates scoring below this")
    parser.add_argument("--no-ai", action="store_true", help="Skip fallback image generation")
    parser.add_argument("--force", action="store_true", help="Re-run completed items")


def setup_collect_commands(subparsers):
    """Setup collection commands."""
    item_parser = subparsers.add_parser("collect-item", help="Collect images for one item")
    item_parser.add_argument("category", help="Category id")
    item_parser.add_argument("item_id", help="Item id")
    _add_collect_arguments(item_parser)
    item_parser.set_defaults(func=cmd_collect_item)

    category_parser = subparsers.add_parser("collect-category", help="Collect images for a whole category")
    category_parser.add_argument("category", help="Category id")
    category_parser.add_argument("--items", help="Comma-separated item ids to limit the run to")
    category_parser.add_argument("--batch-size", type=int, help="Items per batch")
    category_parser.add_argument("--batch-delay", type=float, help="Seconds between batches")
    _add_collect_arguments(category_parser)
    category_parser.set_defaults(func=cmd_collect_category)

    reanalyze_parser = subparsers.add_parser("reanalyze", help="Score an item's stored images again")
    reanalyze_parser.add_argument("category", help="Category id")
    reanalyze_parser.add_argument("item_id", help="Item id")
    reanalyze_parser.set_defaults(func=cmd_reanalyze)
