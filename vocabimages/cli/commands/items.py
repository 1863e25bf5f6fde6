"""Item management CLI commands."""

import json
from pathlib import Path

from vocabimages.errors import ItemNotFound
from vocabimages.storage.item_store import ItemStore

from .common import load_settings


def cmd_add_item(args):
    """Add a vocabulary item to a category."""
    store = ItemStore(load_settings(args).db_path)
    try:
        item = store.add_item(args.category, args.name, item_id=args.id, letter=args.letter,
                              difficulty=args.difficulty)
        print(f"Added item {item.key} ({item.name})")
        return 0
    finally:
        store.close()


def cmd_import_items(args):
    """Import items from a JSON file mapping category to a list of names or objects."""
    path = Path(args.file)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: Failed to read {path}: {e}")
        return 1

    store = ItemStore(load_settings(args).db_path)
    count = 0
    try:
        for category_id, entries in data.items():
            for entry in entries:
                if isinstance(entry, str):
                    entry = {"name": entry}
                store.add_item(
                    category_id,
                    entry["name"],
                    item_id=entry.get("id"),
                    letter=entry.get("letter"),
                    difficulty=entry.get("difficulty", 2),
                )
                count += 1
    finally:
        store.close()

    print(f"Imported {count} items")
    return 0


def cmd_status(args):
    """Show collection status for a category or a single item."""
    store = ItemStore(load_settings(args).db_path)
    try:
        if args.item_id:
            try:
                item = store.find_item(args.category, args.item_id)
            except ItemNotFound as e:
                print(str(e))
                return 1
            _print_item(item, verbose=True)
            return 0

        items = store.list_items(args.category)
        if not items:
            print(f"No items in category {args.category}")
            return 0

        counts = store.get_status_counts(args.category)
        print(f"Category {args.category}: " + ", ".join(f"{k}={v}" for k, v in sorted(counts.items())))
        for item in items:
            _print_item(item)
        return 0
    finally:
        store.close()


def _print_item(item, verbose=False):
    progress = item.progress
    if progress is None:
        print(f"  {item.key}  {item.name}: not collected")
        return

    print(
        f"  {item.key}  {item.name}: {progress.status.value} "
        f"{progress.approved_count}/{progress.target_count} approved, "
        f"{progress.manual_review_count} in review, {progress.rejected_count} rejected, "
        f"attempts {progress.search_attempts}"
    )
    if verbose:
        if progress.average_quality_score is not None:
            print(f"    quality avg {progress.average_quality_score} best {progress.best_quality_score}")
        if progress.next_attempt:
            print(f"    next attempt {progress.next_attempt.isoformat()}")
        for name, stats in progress.sources.items():
            print(f"    {name}: found {stats.found}, approved {stats.approved}, errors {stats.errors}")
        for candidate in item.candidates:
            score = candidate.quality_score.overall if candidate.quality_score else "-"
            primary = " (primary)" if candidate.is_primary else ""
            print(f"    [{candidate.status.value}] {candidate.source_provider}/{candidate.source_id} score {score}{primary}")
        for error in progress.errors:
            print(f"    ! {error.timestamp.isoformat()} {error.source}: {error.message}")


def setup_item_commands(subparsers):
    """Setup item management commands."""
    add_parser = subparsers.add_parser("add-item", help="Add a vocabulary item")
    add_parser.add_argument("category", help="Category id")
    add_parser.add_argument("name", help="Item name")
    add_parser.add_argument("--id", help="Item id (default: derived from name)")
    add_parser.add_argument("--letter", help="Letter (default: first letter of name)")
    add_parser.add_argument("--difficulty", type=int, default=2, choices=(1, 2, 3), help="Difficulty 1-3")
    add_parser.set_defaults(func=cmd_add_item)

    import_parser = subparsers.add_parser("import-items", help="Import items from a JSON file")
    import_parser.add_argument("file", help="JSON file: {category: [name | {name, id, letter, difficulty}]}")
    import_parser.set_defaults(func=cmd_import_items)

    status_parser = subparsers.add_parser("status", help="Show collection status")
    status_parser.add_argument("category", help="Category id")
    status_parser.add_argument("item_id", nargs="?", help="Show details for one item")
    status_parser.set_defaults(func=cmd_status)
