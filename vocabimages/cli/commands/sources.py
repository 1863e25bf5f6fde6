"""Source registry CLI commands."""

from vocabimages.acquisition.registry import SOURCE_TYPES, SourceRegistry

from .common import load_settings


def cmd_add_source(args):
    """Add a new image source."""
    registry = SourceRegistry(load_settings(args).registry_path)
    config = {}

    if args.type == "filesystem":
        if not args.path:
            print("Error: --path is required for filesystem sources")
            return 1
        config["path"] = args.path
    if args.api_key:
        config["api_key"] = args.api_key
    if args.rate_limit:
        config["rate_limit"] = args.rate_limit

    registry.add(args.name, args.type, priority=args.priority, **config)
    print(f"Added {args.type} source: {args.name}")
    return 0


def cmd_remove_source(args):
    """Remove a registered source."""
    registry = SourceRegistry(load_settings(args).registry_path)
    if not registry.remove(args.name):
        print(f"Source not found: {args.name}")
        return 1
    print(f"Removed source: {args.name}")
    return 0


def cmd_list_sources(args):
    """List all registered sources in search order."""
    sources = SourceRegistry(load_settings(args).registry_path).list_sources()

    if not sources:
        print("No sources registered")
        return 0

    print("Registered sources:")
    for name, config in sources.items():
        source_type = config.get("type", "unknown")
        priority = config.get("priority", 0)
        if source_type == "filesystem":
            print(f"  {priority}. {name} ({source_type}: {config.get('path', '?')})")
        else:
            print(f"  {priority}. {name} ({source_type})")

    return 0


def setup_source_commands(subparsers):
    """Setup source registry commands."""
    add_parser = subparsers.add_parser("add-source", help="Register an image source")
    add_parser.add_argument("name", help="Unique source name")
    add_parser.add_argument("--type", required=True, choices=SOURCE_TYPES, help="Source type")
    add_parser.add_argument("--path", help="Image directory (filesystem sources)")
    add_parser.add_argument("--api-key", help="API key (defaults to the provider's environment variable)")
    add_parser.add_argument("--priority", type=int, help="Search order, lower first")
    add_parser.add_argument("--rate-limit", type=int, help="Search requests allowed per hour (web sources)")
    add_parser.set_defaults(func=cmd_add_source)

    remove_parser = subparsers.add_parser("remove-source", help="Unregister an image source")
    remove_parser.add_argument("name", help="Source name")
    remove_parser.set_defaults(func=cmd_remove_source)

    list_parser = subparsers.add_parser("list-sources", help="List registered sources")
    list_parser.set_defaults(func=cmd_list_sources)
