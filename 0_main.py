# ============================================================================
#  0_main.py — Sync Entry Point
#  Version: 2.0.0
#  CHANGES: Sub-commands per sync type, dead-letter replay, cache tooling,
#           exit code reflects partial failure
# ============================================================================
import os
import sys
import argparse
import logging
from pathlib import Path
from dotenv import load_dotenv
from config import SyncConfig
from dead_letter import DeadLetterQueue
from exceptions import ConfigurationError, SyncError
from mapping_store import MappingStore
from models import SyncReport
from order_sync import OrderSyncOrchestrator, retry_dead_letters
from powerbody_client import PowerBodyClient
from product_cache import ProductCache
from product_sync import ProductSyncOrchestrator
from shopify_client import ShopifyClient

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def configure_logging(level: str, log_dir: str = "logs") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    try:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(Path(log_dir) / "app.log", encoding="utf-8")
    except OSError as e:
        logger.warning(f"File logging disabled: {e}")
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="PowerBody to Shopify Sync")
    sub = parser.add_subparsers(dest="command", required=True)

    products = sub.add_parser("products", help="Sync the PowerBody catalogue into Shopify")
    products.add_argument("--start-batch", type=int, default=0, help="Resume from this batch index")

    orders = sub.add_parser("orders", help="Send new Shopify orders to PowerBody and pull status updates")
    orders.add_argument("--skip-refunds", action="store_true", help="Do not sync refunds in this run")
    orders.add_argument("--skip-comments", action="store_true", help="Do not sync comments in this run")

    sub.add_parser("comments", help="Sync order comments in both directions")
    sub.add_parser("refunds", help="Create Shopify refunds for PowerBody refunds")
    sub.add_parser("all", help="Products, then orders with refunds and comments")

    retry = sub.add_parser("retry-dead-letter", help="Resubmit the newest failed order")
    retry.add_argument("--all", action="store_true", help="Resubmit every pending failed order")

    cache = sub.add_parser("cache", help="Manage the PowerBody product cache")
    cache.add_argument("action", choices=["clear", "refresh"])
    cache.add_argument("--id", help="Product ID (required for refresh, optional for clear)")
    return parser


def build_components(config: SyncConfig) -> dict:
    storage = Path(config.storage_dir)
    cache = ProductCache(storage / "cache" / "products", ttl_seconds=config.cache_ttl_days * 24 * 3600)
    powerbody = PowerBodyClient(
        wsdl=config.powerbody_wsdl,
        username=config.powerbody_user,
        password=config.powerbody_pass,
        cache=cache,
    )
    shopify = ShopifyClient(
        store=config.shopify_store,
        token=config.shopify_access_token,
        version=config.shopify_api_version,
        location_id=config.shopify_location_id,
    )
    store = MappingStore(storage / "sync.sqlite")
    dead_letters = DeadLetterQueue(storage / "dead_letter")
    return {
        "cache": cache,
        "powerbody": powerbody,
        "shopify": shopify,
        "store": store,
        "dead_letters": dead_letters,
        "orders": OrderSyncOrchestrator(powerbody, shopify, store, dead_letters, orders_file=config.orders_file),
        "products": ProductSyncOrchestrator(powerbody, shopify, store, config),
    }


def run_command(args, parts: dict) -> list:
    orders: OrderSyncOrchestrator = parts["orders"]
    products: ProductSyncOrchestrator = parts["products"]

    if args.command == "products":
        return [products.run(start_batch=args.start_batch)]
    if args.command == "orders":
        return [orders.run(include_refunds=not args.skip_refunds, include_comments=not args.skip_comments)]
    if args.command == "comments":
        return [orders.sync_comments()]
    if args.command == "refunds":
        return [orders.sync_refunds()]
    if args.command == "all":
        return [products.run(), orders.run()]
    if args.command == "retry-dead-letter":
        return [retry_dead_letters(parts["dead_letters"], orders, all_pending=args.all)]

    # cache
    report = SyncReport(name=f"cache {args.action}")
    powerbody: PowerBodyClient = parts["powerbody"]
    if args.action == "clear":
        count = powerbody.clear_product_cache(args.id)
        logger.info(f"Cleared {count} cache file(s)")
        report.succeeded = count
    elif not args.id:
        report.add_error("--id is required for cache refresh")
        logger.error(report.errors[-1])
    elif powerbody.refresh_product_cache(args.id):
        report.succeeded = 1
    else:
        report.add_error(f"Failed to refresh cache for product {args.id}")
    return [report]


def main(argv=None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        config = SyncConfig.from_env(os.environ)
    except ConfigurationError as e:
        configure_logging("INFO")
        logger.error(str(e))
        return 2
    configure_logging(config.log_level)

    try:
        config.require()
    except ConfigurationError as e:
        logger.error(str(e))
        return 2
    config.log_summary()

    try:
        parts = build_components(config)
    except SyncError as e:
        logger.error(f"Could not initialize sync: {e}")
        return 1

    try:
        reports = run_command(args, parts)
    except SyncError as e:
        logger.error(f"Sync aborted: {e}")
        return 1
    finally:
        parts["powerbody"].close()
        parts["store"].close()

    logger.info("=" * 80)
    for report in reports:
        logger.info(report.summary())
        for error in report.errors[:20]:
            logger.info(f"  - {error}")
    logger.info("=" * 80)
    return max(report.exit_code for report in reports)


if __name__ == "__main__":
    sys.exit(main())
# ============================================================================
# End of 0_main.py — Version: 2.0.0
# ============================================================================
