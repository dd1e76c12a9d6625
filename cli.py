# cli.py

import argparse
import json
import logging
import sys
from pathlib import Path

from config import SystemConfig
from core.database import CacheLayer
from core.duplicate_detection import GroupingPipeline
from core.errors import NotConfiguredError, OperationCancelled
from core.types import PhotoRecord
from utils.file_utils import format_file_size, photo_records_from_directory
from utils.logging_config import setup_logging
from utils.performance_monitor import get_system_info
from utils.report_generator import SimilarityReportGenerator

logger = logging.getLogger("cli")


def _load_config(args) -> SystemConfig:
    config = SystemConfig.load(args.config)
    if getattr(args, 'no_cache', False):
        config.cache.enabled = False
    return config


def _build_pipeline(config: SystemConfig, use_deep: bool) -> GroupingPipeline:
    deep_extractor = None
    if use_deep:
        from core.feature_extractors import CLIPFeatureExtractor
        try:
            deep_extractor = CLIPFeatureExtractor()
        except ImportError as e:
            logger.error("Deep features need the 'deep' extra (%s); continuing without", e)
    return GroupingPipeline(config, deep_extractor=deep_extractor)


def _scan(directory: str):
    photos = photo_records_from_directory(directory)
    print(f"Found {len(photos)} images in {directory}")
    return photos


def group_command(args):
    """Group similar photos in a directory"""
    config = _load_config(args)
    if args.threshold is not None:
        config.grouping.similarity_threshold = args.threshold

    photos = _scan(args.directory)
    if not photos:
        return 0

    pipeline = _build_pipeline(config, args.deep)
    try:
        result = pipeline.run(photos)
    except OperationCancelled:
        print("Grouping cancelled")
        return 1
    finally:
        pipeline.close()

    print(f"\nFound {len(result.groups)} similarity groups "
          f"({len(result.failures)} photos failed)")

    if args.report:
        SimilarityReportGenerator().generate_report(result, args.report)
        print(f"Report saved to: {args.report}")
    else:
        qualities = result.qualities
        for group in result.groups:
            print(f"\n{group.id} (average similarity {group.average_similarity:.1f}):")
            for photo_id in group.member_photo_ids:
                marker = "*" if photo_id == group.representative_photo_id else " "
                quality = qualities.get(photo_id)
                score = f"{quality.score:.0f}" if quality else "n/a"
                print(f"  {marker} {photo_id} (quality {score})")
    return 0


def index_command(args):
    """Analyze and index a directory, then print index statistics"""
    config = _load_config(args)
    photos = _scan(args.directory)
    pipeline = _build_pipeline(config, args.deep)
    try:
        failures = pipeline.index_photos(photos)
        stats = pipeline.index.stats()
        stats['lsh'] = pipeline.lsh.bucket_stats()
        if pipeline.cache is not None:
            stats['cache'] = pipeline.cache.stats()
    finally:
        pipeline.close()

    stats['failed'] = failures.get_report()['by_type']
    print(json.dumps(stats, indent=2, default=str))
    return 0


def search_command(args):
    """Search a directory for photos similar to a query image"""
    config = _load_config(args)
    photos = _scan(args.directory)
    pipeline = _build_pipeline(config, args.deep)
    query_path = Path(args.query)
    query = PhotoRecord(
        id=str(query_path),
        data=str(query_path),
        last_modified=query_path.stat().st_mtime,
        size=query_path.stat().st_size,
    )
    try:
        pipeline.index_photos(photos)
        results = pipeline.index.search_similar_photos(
            query, limit=args.top_k, threshold=args.threshold
        )
    except NotConfiguredError as e:
        print(f"Error: {e}")
        return 1
    finally:
        pipeline.close()

    print(f"\nTop {len(results)} similar images:")
    for i, item in enumerate(results, 1):
        print(f"{i}. {item.photo_id} (similarity: {item.similarity:.4f}, level {item.level.value})")

    if args.output:
        output_data = [
            {"path": r.photo_id, "similarity": r.similarity, "level": r.level.value}
            for r in results
        ]
        with open(args.output, 'w') as f:
            json.dump(output_data, f, indent=2)
        print(f"\nResults saved to: {args.output}")
    return 0


def cache_command(args):
    """Inspect or clear the persistent feature cache"""
    config = _load_config(args)
    config.cache.persist = True
    cache = CacheLayer.from_config(config.cache)
    if cache.store is None:
        print(f"Cache store unavailable: {config.cache.store_path}")
        return 1
    try:
        if args.action == 'clear':
            cache.clear()
            print("Cache cleared")
        else:
            print(f"Persistent entries: {cache.store.count()}")
            print(f"Store: {config.cache.store_path}")
    finally:
        cache.store.close()
    return 0


def info_command(args):
    info = get_system_info()
    info['memory_total'] = format_file_size(int(info.pop('memory_total_gb') * 1024 ** 3))
    print(json.dumps(info, indent=2))
    return 0


def main_cli(argv=None):
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description="Photo similarity indexing and grouping"
    )
    parser.add_argument('-c', '--config', default="config.yaml", help='YAML configuration file')
    parser.add_argument('--log-level', default=None, help='Override the configured log level')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    group_parser = subparsers.add_parser('group', help='Group similar photos')
    group_parser.add_argument('directory', help='Directory to scan')
    group_parser.add_argument('-t', '--threshold', type=float, default=None,
                              help='Weighted hash similarity threshold (0-100)')
    group_parser.add_argument('--deep', action='store_true', help='Enable CLIP features')
    group_parser.add_argument('--no-cache', action='store_true', help='Disable the feature cache')
    group_parser.add_argument('-r', '--report', help='Report path (.json or .html)')
    group_parser.set_defaults(func=group_command)

    index_parser = subparsers.add_parser('index', help='Index photos from directory')
    index_parser.add_argument('directory', help='Directory containing images')
    index_parser.add_argument('--deep', action='store_true', help='Enable CLIP features')
    index_parser.set_defaults(func=index_command)

    search_parser = subparsers.add_parser('search', help='Search for similar images')
    search_parser.add_argument('query', help='Path to query image')
    search_parser.add_argument('directory', help='Directory to search')
    search_parser.add_argument('-k', '--top-k', type=int, default=10,
                               help='Number of results to return')
    search_parser.add_argument('--threshold', type=float, default=None,
                               help='Minimum similarity (0-1)')
    search_parser.add_argument('--deep', action='store_true', help='Enable CLIP features')
    search_parser.add_argument('-o', '--output', help='Output JSON file for results')
    search_parser.set_defaults(func=search_command)

    cache_parser = subparsers.add_parser('cache', help='Inspect the feature cache')
    cache_parser.add_argument('action', choices=['stats', 'clear'])
    cache_parser.set_defaults(func=cache_command)

    info_parser = subparsers.add_parser('info', help='Show system information')
    info_parser.set_defaults(func=info_command)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    config = SystemConfig.load(args.config)
    setup_logging(args.log_level or config.log_level, config.log_dir)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main_cli())
