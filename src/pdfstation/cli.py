import argparse
import sys
from pathlib import Path

from .config import resolve_config
from .errors import InvalidJobRequestError, JobNotFoundError
from .jobs.models import JobStatus, Operation, ProtectionAction
from .jobs.worker import JobWorkerPool, drain
from .logging_setup import configure_logging
from .runtime import build_station


def _add_common_options(parser):
    parser.add_argument("--config", "-c", type=str, help="Base YAML config (default: config/default.yaml)")
    parser.add_argument("--db", type=str, help="SQLite database for jobs and messages")
    parser.add_argument("--upload-dir", type=str, help="Override staging directory for inputs")
    parser.add_argument("--output-dir", type=str, help="Override directory for outputs")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level"
    )


def _build_parser():
    parser = argparse.ArgumentParser(
        prog="pdfstation", description="Asynchronous PDF job pipeline"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Submit a PDF job")
    submit_subparsers = submit_parser.add_subparsers(dest="operation", help="Operations")

    compress_parser = submit_subparsers.add_parser("compress", help="Compress a PDF")
    compress_parser.add_argument("file", type=str, help="Input PDF")
    compress_parser.add_argument(
        "--quality", "-q", type=int, default=50, help="0-100, higher keeps more detail (default 50)"
    )

    merge_parser = submit_subparsers.add_parser("merge", help="Merge PDFs in the given order")
    merge_parser.add_argument("files", nargs="+", type=str, help="Input PDFs (two or more)")

    split_parser = submit_subparsers.add_parser("split", help="Split a PDF into a zip of parts")
    split_parser.add_argument("file", type=str, help="Input PDF")
    split_parser.add_argument(
        "--mode", choices=["pages", "interval", "all"], default="all", help="Split mode"
    )
    split_parser.add_argument("--ranges", type=str, help='Page ranges for pages mode, e.g. "1-3,5"')
    split_parser.add_argument("--interval", type=int, help="Pages per part for interval mode")

    protect_parser = submit_subparsers.add_parser("protect", help="Encrypt a PDF (AES-256)")
    protect_parser.add_argument("file", type=str, help="Input PDF")
    protect_parser.add_argument("--user-password", required=True, help="Password to open")
    protect_parser.add_argument("--owner-password", help="Permissions password (default: <user>_owner)")
    protect_parser.add_argument("--no-print", action="store_true", help="Disallow printing")
    protect_parser.add_argument("--no-copy", action="store_true", help="Disallow copying text")
    protect_parser.add_argument("--no-modify", action="store_true", help="Disallow modification")
    protect_parser.add_argument("--no-assemble", action="store_true", help="Disallow page assembly")

    unprotect_parser = submit_subparsers.add_parser("unprotect", help="Remove password protection")
    unprotect_parser.add_argument("file", type=str, help="Input PDF")
    unprotect_parser.add_argument("--password", required=True, help="Current password")

    word_parser = submit_subparsers.add_parser("pdf-to-word", help="Convert a PDF to .docx")
    word_parser.add_argument("file", type=str, help="Input PDF")

    for sub in (compress_parser, merge_parser, split_parser, protect_parser, unprotect_parser, word_parser):
        _add_common_options(sub)

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Consume and process submitted jobs")
    worker_parser.add_argument("--workers", "-w", type=int, help="Number of worker threads")
    worker_parser.add_argument(
        "--drain", action="store_true", help="Process the current backlog once, then exit"
    )
    _add_common_options(worker_parser)

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show one job and its history")
    status_parser.add_argument("job_id", type=str, help="Job identifier")
    _add_common_options(status_parser)

    # JOBS
    jobs_parser = subparsers.add_parser("jobs", help="List jobs")
    jobs_parser.add_argument(
        "--status", choices=[s.value for s in JobStatus], help="Only jobs in this state"
    )
    _add_common_options(jobs_parser)

    # DLQ
    dlq_parser = subparsers.add_parser("dlq", help="List dead-letter entries")
    dlq_parser.add_argument("--limit", type=int, help="Max entries to show")
    _add_common_options(dlq_parser)

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", type=str, default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port")
    _add_common_options(serve_parser)

    return parser, submit_parser


def _load_config(args):
    cli_dict = {
        "db": getattr(args, "db", None),
        "workers": getattr(args, "workers", None),
        "upload_dir": getattr(args, "upload_dir", None),
        "output_dir": getattr(args, "output_dir", None),
        "log_level": getattr(args, "log_level", None),
    }
    cli_dict = {k: v for k, v in cli_dict.items() if v is not None}
    base_path = Path(args.config) if getattr(args, "config", None) else None
    config = resolve_config(cli_dict, base_path=base_path)
    configure_logging(config.logging.level)
    return config


def _submit_params(args):
    """Map submit arguments onto (operation, input files, params)."""
    if args.operation == "compress":
        if not 0 <= args.quality <= 100:
            raise InvalidJobRequestError("quality must be between 0 and 100")
        return Operation.COMPRESS, [args.file], {"quality": args.quality / 100.0}
    if args.operation == "merge":
        return Operation.MERGE, args.files, {}
    if args.operation == "split":
        params = {"mode": args.mode.upper(), "ranges": args.ranges, "interval": args.interval}
        return Operation.SPLIT, [args.file], params
    if args.operation == "protect":
        params = {
            "action": ProtectionAction.ADD,
            "user_password": args.user_password,
            "owner_password": args.owner_password,
            "allow_printing": not args.no_print,
            "allow_copying": not args.no_copy,
            "allow_modification": not args.no_modify,
            "allow_assembly": not args.no_assemble,
        }
        return Operation.PROTECT, [args.file], params
    if args.operation == "unprotect":
        return Operation.PROTECT, [args.file], {"action": ProtectionAction.REMOVE, "password": args.password}
    return Operation.PDF_TO_WORD, [args.file], {}


def _print_job(job):
    print(f"Job:                  {job.id}")
    print(f"Operation:            {job.operation.value}")
    print(f"Status:               {job.status.value}")
    print(f"Attempts:             {job.retry_count}/{job.max_retries}")
    if job.output_path:
        print(f"Output:               {job.output_path}")
    if job.error_message:
        print(f"Last error:           {job.error_message}")


def main():
    parser, submit_parser = _build_parser()
    args = parser.parse_args()

    if args.command == "submit":
        if not args.operation:
            submit_parser.print_help()
            return
        config = _load_config(args)
        station = build_station(config)
        try:
            operation, files, params = _submit_params(args)
            job = station.submissions.submit_paths(operation, files, params)
        except InvalidJobRequestError as e:
            print(f"❌ {e}")
            sys.exit(1)
        finally:
            station.close()
        print(f"✅ Submitted {job.operation.value} job {job.id} ({job.status.value})")

    elif args.command == "worker":
        config = _load_config(args)
        if args.drain:
            station = build_station(config)
            try:
                results = drain(station)
            finally:
                station.close()

            counts = {}
            for result in results:
                counts[result.outcome.value] = counts.get(result.outcome.value, 0) + 1
            print("\n" + "=" * 60)
            print("PROCESSING SUMMARY")
            print("=" * 60)
            print(f"Completed:            {counts.get('SUCCESS', 0)}")
            print(f"Redelivered:          {counts.get('RETRY', 0)}")
            print(f"Failed (DLQ):         {counts.get('TERMINAL', 0)}")
            print(f"Already handled:      {counts.get('ALREADY_HANDLED', 0)}")
            print(f"Discarded:            {counts.get('DISCARDED', 0)}")
            print("=" * 60)
        else:
            pool = JobWorkerPool(config)
            print(f"Starting {pool.n_workers} workers (Ctrl+C to stop)")
            with pool:
                try:
                    pool.wait()
                except KeyboardInterrupt:
                    print("\nStopping workers after in-flight jobs...")

    elif args.command == "status":
        config = _load_config(args)
        station = build_station(config)
        try:
            job = station.submissions.get_job(args.job_id)
            transitions = station.store.get_transitions(job.id)
        except JobNotFoundError:
            print(f"❌ Job not found: {args.job_id}")
            sys.exit(1)
        finally:
            station.close()

        print("\n" + "=" * 60)
        print("JOB STATUS")
        print("=" * 60)
        _print_job(job)
        print("-" * 60)
        for t in transitions:
            line = f"{t.timestamp.isoformat(timespec='seconds')}  {t.from_state or '-':>10} -> {t.to_state}"
            if t.error_snippet:
                line += f"  ({t.error_snippet})"
            print(line)
        print("=" * 60)

    elif args.command == "jobs":
        config = _load_config(args)
        station = build_station(config)
        try:
            jobs = station.submissions.list_jobs(JobStatus(args.status) if args.status else None)
        finally:
            station.close()

        if not jobs:
            print("No jobs.")
            return
        for job in jobs:
            print(f"{job.id}  {job.operation.value:<12} {job.status.value:<11} {job.retry_count}/{job.max_retries}")

    elif args.command == "dlq":
        config = _load_config(args)
        station = build_station(config)
        try:
            entries = station.exchange.messages(config.exchange.dead_letter_topic, limit=args.limit)
            jobs = {entry.key: station.store.get_job(entry.key) for entry in entries}
        finally:
            station.close()

        if not entries:
            print("Dead-letter channel is empty.")
            return
        for entry in entries:
            job = jobs.get(entry.key)
            error = job.error_message if job else "(job row missing)"
            print(f"{entry.published_at.isoformat(timespec='seconds')}  {entry.key}  "
                  f"{entry.payload.get('operation')}  {error}")

    elif args.command == "serve":
        import uvicorn

        from .api.main import create_app

        config = _load_config(args)
        uvicorn.run(create_app(config), host=args.host, port=args.port)

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
