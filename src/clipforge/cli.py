import argparse
import logging
import os
import sys
import threading
from pathlib import Path

from tqdm import tqdm

from .config import resolve_config
from .ffmpeg_runner import check_ffmpeg, probe_duration
from .jobs import JobStatus, ProcessingRequest, QualityTier, SourceMedia
from .orchestrator import Orchestrator
from .storage import is_store_ref


def _cli_dict(args) -> dict:
    return {k: v for k, v in vars(args).items() if v is not None}


def _source_from_args(args) -> SourceMedia:
    ref = args.input
    duration = None
    size = 0
    if not is_store_ref(ref):
        path = Path(ref)
        if not path.is_file():
            print(f"❌ Input not found: {ref}")
            sys.exit(1)
        size = path.stat().st_size
        duration = probe_duration(str(path))
        if duration is None:
            print("⚠️  Could not read source duration; using full derivative counts.")
    return SourceMedia(
        key=args.key or Path(ref).stem,
        ref=ref,
        original_name=Path(ref).name,
        title=args.title,
        artist=args.artist,
        duration_s=duration,
        size_bytes=size,
        owner=args.owner,
    )


def _request_from_args(args) -> ProcessingRequest:
    ranges = args.ranges or ""
    if args.ranges_file:
        ranges = Path(args.ranges_file).read_text(encoding="utf-8")
    return ProcessingRequest(
        time_ranges=ranges,
        subclips=not args.no_subclips,
        aspect_ratios=args.aspect or ["16:9"],
        loop_gifs=args.gifs,
        still_frames=args.stills,
        vertical_loops=args.vertical_loops,
        quality=QualityTier(args.quality),
        fade_in=args.fade_in,
        fade_out=args.fade_out,
        fade_audio=args.fade_audio,
    )


def run_job(args) -> int:
    """Run one job in-process with a progress bar; returns the exit code."""
    config = resolve_config(_cli_dict(args))
    orchestrator = Orchestrator(config)
    source = _source_from_args(args)
    request = _request_from_args(args)

    job = orchestrator.new_job(source, request)
    orchestrator.register(job)
    subscription = orchestrator.subscribe_progress(job.key)
    worker = threading.Thread(target=orchestrator.process, args=(job,), daemon=True)
    worker.start()

    with tqdm(total=100, desc=source.key, unit="%", bar_format="{l_bar}{bar}| {n:.0f}/{total}%") as bar:
        try:
            for event in subscription:
                bar.update(event.percentage - bar.n)
                postfix = {"op": event.current_operation or "-"}
                if event.eta_s is not None:
                    postfix["eta"] = f"{event.eta_s:.0f}s"
                bar.set_postfix(postfix)
        except KeyboardInterrupt:
            print("\nCancelling...")
            orchestrator.cancel(job.key)
    worker.join()

    print("\n" + "=" * 60)
    print(f"JOB {job.status.value.upper()}")
    print("=" * 60)
    print(f"Operations:           {job.completed_operations}/{job.total_operations} completed")
    if job.deadline is not None:
        print(f"Deadline:             {job.deadline.total_seconds / 60:.1f} min")
    for error in job.errors:
        print(f"  - {error}")
    if job.archive_location:
        print(f"Archive:              {job.archive_location}")
    if job.download_url:
        print(f"Download:             {job.download_url}")
    print("=" * 60)
    return 0 if job.status == JobStatus.COMPLETED else 1


def main():
    parser = argparse.ArgumentParser(
        prog="clipforge", description="Media derivative job orchestrator"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # RUN
    run_parser = subparsers.add_parser("run", help="Process one source in-process")
    run_parser.add_argument("--input", "-i", type=str, required=True,
                            help="Source file or store:// reference")
    run_parser.add_argument("--key", type=str, help="Source identifier (default: file stem)")
    run_parser.add_argument("--ranges", type=str, help="Time ranges, e.g. '0:10-0:25, 1:00-1:30'")
    run_parser.add_argument("--ranges-file", type=str, help="File with one range per line")
    run_parser.add_argument("--no-subclips", action="store_true", help="Skip subclips")
    run_parser.add_argument("--aspect", action="append", choices=["16:9", "9:16"],
                            help="Aspect ratio (repeatable)")
    run_parser.add_argument("--gifs", action="store_true", help="Loop GIF series")
    run_parser.add_argument("--stills", action="store_true", help="Still frame series")
    run_parser.add_argument("--vertical-loops", action="store_true", help="Vertical loop series")
    run_parser.add_argument("--quality", choices=[q.value for q in QualityTier],
                            default=QualityTier.BALANCED.value, help="Quality tier")
    run_parser.add_argument("--fade-in", action="store_true")
    run_parser.add_argument("--fade-out", action="store_true")
    run_parser.add_argument("--fade-audio", action="store_true")
    run_parser.add_argument("--title", type=str)
    run_parser.add_argument("--artist", type=str)
    run_parser.add_argument("--owner", type=str, help="Owner for archive namespacing")
    run_parser.add_argument("--work-root", type=str, help="Working directory root")
    run_parser.add_argument("--storage-root", type=str, help="Local storage root")
    run_parser.add_argument("--save-artifacts", action="store_true", default=None,
                            help="Keep ffmpeg logs of failed commands")

    # CHECK FFMPEG
    subparsers.add_parser("check", help="Verify dependencies")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Consume the SQLite job queue")
    worker_parser.add_argument("--db", type=str, help="Queue database path")
    worker_parser.add_argument("--max-jobs", type=int, help="Stop after this many jobs")
    worker_parser.add_argument("--work-root", type=str, help="Working directory root")

    # QUEUE subcommands
    queue_parser = subparsers.add_parser("queue", help="Inspect the job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")
    status_parser = queue_subparsers.add_parser("status", help="Show queue status")
    status_parser.add_argument("--db", type=str, help="Queue database path")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Serve the HTTP status API")
    serve_parser.add_argument("--host", type=str, default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--queue-backend", choices=["none", "http", "sqlite"])
    serve_parser.add_argument("--db", type=str, help="Queue database path")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "run":
        sys.exit(run_job(args))

    elif args.command == "check":
        print("Checking dependencies...")
        if check_ffmpeg():
            print("✅ ffmpeg found.")
        else:
            print("❌ ffmpeg NOT runnable.")
            sys.exit(1)

    elif args.command == "worker":
        from .queue import QueueWorker, SQLiteQueue

        config = resolve_config(_cli_dict(args))
        queue = SQLiteQueue(config.queue.db_path)
        worker = QueueWorker(
            queue, Orchestrator(config),
            heartbeat_interval_s=config.queue.heartbeat_interval_s,
            poll_interval_s=config.queue.poll_interval_s,
            stale_timeout_s=config.queue.stale_timeout_s,
        )
        print(f"Worker {worker.worker_id} consuming {config.queue.db_path} (pid {os.getpid()})")
        try:
            processed = worker.run_forever(max_jobs=args.max_jobs)
        except KeyboardInterrupt:
            print("\nInterrupted.")
            sys.exit(130)
        print(f"Processed {processed} jobs.")

    elif args.command == "queue":
        if args.queue_command == "status":
            from .queue import SQLiteQueue

            config = resolve_config(_cli_dict(args))
            queue = SQLiteQueue(config.queue.db_path)
            try:
                counts = queue.counts()
            finally:
                queue.close()
            print("\n" + "=" * 60)
            print("QUEUE STATUS")
            print("=" * 60)
            print(f"Pending:              {counts['pending']}")
            print(f"Running:              {counts['running']}")
            print(f"Succeeded:            {counts['succeeded']}")
            print(f"Failed:               {counts['failed']}")
            print(f"Total:                {counts['total']}")
            print("=" * 60)
        else:
            queue_parser.print_help()

    elif args.command == "serve":
        import uvicorn

        from .api.main import build_dispatcher, create_app

        config = resolve_config(_cli_dict(args))
        uvicorn.run(create_app(build_dispatcher(config)), host=args.host, port=args.port)

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
