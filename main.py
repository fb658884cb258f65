import argparse, asyncio, sys
from src.sitecrawler.config import CrawlLimits, HttpConfig, configure_logging, get_database_config
from src.sitecrawler.crawl import run_worker, submit_job
from src.sitecrawler.db_operations import CrawlStore, JobNotFoundError


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Async website crawler recording pages, links, images, scripts and redirects",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s start example.com
  %(prog)s start https://www.example.com --max-depth 3 --concurrency 20
  %(prog)s worker 1
  %(prog)s status 1
  %(prog)s redirects 1
  %(prog)s recrawl 1
  %(prog)s --db-backend postgresql delete 1
        """
    )

    # Storage
    p.add_argument("--db-backend", choices=["sqlite", "postgresql"], default=None,
                   help="Database backend (default: SITECRAWLER_DB_BACKEND or sqlite)")
    p.add_argument("--sqlite-path", type=str, default=None,
                   help="SQLite database file (default: data/sitecrawler.db)")

    # Crawling behavior
    p.add_argument("--concurrency", type=int, default=None,
                   help="Maximum concurrent requests and batch size (default: 10)")
    p.add_argument("--max-depth", type=int, default=None,
                   help="Maximum crawl depth (default: 50)")
    p.add_argument("--timeout", type=float, default=None,
                   help="Request timeout in seconds (default: 30)")
    p.add_argument("--follow-nofollow", action="store_true",
                   help="Also enqueue internal links marked rel=nofollow")
    p.add_argument("--verbose", "-v", action="store_true",
                   help="Enable debug logging")

    sub = p.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Create a job for a domain and crawl it")
    start.add_argument("domain", help="Domain or URL to crawl (https:// is added when missing)")
    start.add_argument("--no-run", action="store_true",
                       help="Only create the job; run it later with 'worker'")

    for name, help_text in (
        ("worker", "Run the crawl for an existing job"),
        ("status", "Show job status and counts"),
        ("recrawl", "Clear a job's results and crawl it again"),
        ("delete", "Delete a job and all of its results"),
        ("redirects", "Summarize redirected pages for a job"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("job_id", type=int, help="Crawl job id")

    return p


def build_configs(args):
    http_config = HttpConfig()
    if args.concurrency is not None:
        http_config.max_concurrency = max(1, args.concurrency)
    if args.timeout is not None:
        http_config.timeout = args.timeout
    limits = CrawlLimits()
    if args.max_depth is not None:
        limits.max_depth = args.max_depth
    if args.follow_nofollow:
        limits.follow_nofollow = True
    return http_config, limits


async def print_status(store: CrawlStore, job_id: int) -> None:
    job = await store.get_job(job_id)
    queue = await store.queue_stats(job_id)
    print(f"Job {job.id}: {job.domain} [{job.status}]")
    print(f"  started:   {job.started_at or '-'}")
    print(f"  completed: {job.completed_at or '-'}")
    print(f"  pages: {job.total_pages}  links: {job.total_links}  images: {job.total_images}  "
          f"scripts: {job.total_scripts}  failed: {job.failed_urls}")
    print(f"  queue: {queue['pending']} pending, {queue['processing']} processing, "
          f"{queue['completed']} completed, {queue['failed']} failed")


async def print_redirects(store: CrawlStore, job_id: int, threshold: int) -> None:
    await store.get_job(job_id)
    stats = await store.redirect_stats(job_id, threshold)
    print(f"Redirects for job {job_id}:")
    print(f"  total:     {stats['total']}")
    print(f"  permanent: {stats['permanent']} (301/308)")
    print(f"  temporary: {stats['temporary']} (302/303/307)")
    print(f"  excessive: {stats['excessive']} (more than {threshold} hops)")


async def main(args) -> int:
    http_config, limits = build_configs(args)
    db_config = get_database_config(args.db_backend, args.sqlite_path)

    job_id = getattr(args, "job_id", None)
    async with CrawlStore(db_config) as store:
        try:
            if args.command == "start":
                job_id = await submit_job(store, args.domain)
                print(f"Created crawl job {job_id}")
                if args.no_run:
                    return 0
                status = await run_worker(job_id, store, http_config, limits)
            elif args.command == "worker":
                status = await run_worker(job_id, store, http_config, limits)
            elif args.command == "recrawl":
                await store.reset_job(job_id)
                status = await run_worker(job_id, store, http_config, limits)
            elif args.command == "status":
                await print_status(store, args.job_id)
                return 0
            elif args.command == "redirects":
                await print_redirects(store, args.job_id, limits.max_redirect_threshold)
                return 0
            elif args.command == "delete":
                await store.get_job(args.job_id)
                await store.delete_job(args.job_id)
                print(f"Deleted crawl job {args.job_id}")
                return 0
            else:
                return 2
        except JobNotFoundError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    print(f"Crawl job {job_id} finished: {status}")
    return 0 if status == "completed" else 1


if __name__ == "__main__":
    args = build_parser().parse_args()
    configure_logging("DEBUG" if args.verbose else None)
    try:
        sys.exit(asyncio.run(main(args)))
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(130)
