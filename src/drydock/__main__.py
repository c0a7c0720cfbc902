"""CLI entrypoint for drydock."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

from drydock.config import DrydockConfig, load_config
from drydock.errors import ConfigError, DrydockError, FeedError, LockError
from drydock.feed import GitHubIssueFeed, WorkFeed


def _load_dotenv() -> None:
    """Load .env from cwd, its parent, or package root so it's found regardless of cwd."""
    try:
        from dotenv import load_dotenv
    except ImportError:
        return
    # Package root = directory containing pyproject.toml / .env (parent of src/)
    _package_root = Path(__file__).resolve().parent.parent.parent
    for dir_ in (Path.cwd(), Path.cwd().parent, _package_root):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


_load_dotenv()

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all supported commands."""
    p = argparse.ArgumentParser(
        prog="drydock",
        description="drydock - autonomous scheduler and pipeline engine for AI coding agents.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    p.add_argument(
        "--config",
        type=str,
        default="",
        help="YAML or JSON configuration file (default: ./drydock.yaml when present).",
    )
    # -- Sub-commands ---------------------------------------------------------
    sub = p.add_subparsers(dest="command")

    # Daemon
    daemon_p = sub.add_parser("daemon", help="Control the feed-polling scheduler.")
    daemon_sub = daemon_p.add_subparsers(dest="daemon_command")
    start_p = daemon_sub.add_parser("start", help="Start the scheduler.")
    start_p.add_argument(
        "--foreground",
        action="store_true",
        help="Run the poll loop in this process instead of detaching.",
    )
    daemon_sub.add_parser("stop", help="Ask the running scheduler to stop.")
    daemon_sub.add_parser("status", help="Show scheduler liveness and job registry.")

    # Pipeline
    pipe_p = sub.add_parser("pipeline", help="Run a single job's stage pipeline.")
    pipe_sub = pipe_p.add_subparsers(dest="pipeline_command")
    run_p = pipe_sub.add_parser("run", help="Run the pipeline for one work item.")
    run_p.add_argument("--issue", type=int, default=None, help="Work item number.")
    run_p.add_argument(
        "--workspace",
        type=str,
        default="",
        help="Checkout to work in (default: current directory).",
    )
    run_p.add_argument("--template", type=str, default="", help="Stage template (fast, standard, full, hotfix).")
    run_p.add_argument("--goal", type=str, default="", help="Goal text; required without --issue.")
    run_p.add_argument("--resume", action="store_true", help="Resume from saved checkpoints.")

    # Triage
    triage_p = sub.add_parser("triage", help="Score feed items and print the breakdown.")
    triage_p.add_argument(
        "--issue",
        type=int,
        action="append",
        default=None,
        help="Item number to score (repeatable; default: all candidates).",
    )

    # Vitals
    vitals_p = sub.add_parser("vitals", help="Print a job's health score and adaptive limit.")
    vitals_p.add_argument("--job", type=str, required=True, help="Job id, e.g. issue-42.")

    # Incidents
    inc_p = sub.add_parser("incident", help="Incident detection and reporting.")
    inc_sub = inc_p.add_subparsers(dest="incident_command")
    watch_p = inc_sub.add_parser("watch", help="Watch the event log for failure bursts.")
    watch_p.add_argument("--interval", type=int, default=None, help="Seconds between checks.")
    inc_sub.add_parser("list", help="List recorded incidents.")
    report_p = inc_sub.add_parser("report", help="Write a post-incident report.")
    report_p.add_argument("incident_id")
    resolve_p = inc_sub.add_parser("resolve", help="Mark an incident resolved.")
    resolve_p.add_argument("incident_id")
    resolve_p.add_argument("--note", type=str, default="", help="Resolution note.")
    return p


# -- Shared helpers -----------------------------------------------------------


def _config_path(args: argparse.Namespace) -> Path | None:
    raw = str(getattr(args, "config", "") or "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    default = Path.cwd() / "drydock.yaml"
    return default if default.is_file() else None


def _build_feed(config: DrydockConfig) -> WorkFeed | None:
    if not config.feed.repo:
        return None
    try:
        return GitHubIssueFeed(config.feed)
    except FeedError as exc:
        logger.warning("Work feed disabled: %s", exc)
        return None


# -- Daemon -------------------------------------------------------------------


def _run_daemon(args: argparse.Namespace, config: DrydockConfig, config_path: Path | None) -> int:
    from drydock.scheduler import Scheduler, daemon_status, start_background, stop_daemon

    action = getattr(args, "daemon_command", None)
    if action == "start":
        if not args.foreground:
            try:
                pid = start_background(config, config_path=config_path)
            except DrydockError as exc:
                print(f"Error: {exc}", file=sys.stderr)
                return EXIT_FAILURE
            print(f"  Scheduler started in the background (PID {pid}).")
            print(f"  Log: {config.logs_dir / 'daemon.log'}")
            return EXIT_OK
        feed = _build_feed(config)
        if feed is None:
            logger.warning("No feed repository configured; only queued items will run")
        try:
            return Scheduler(config, feed=feed, config_path=config_path).run()
        except LockError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return EXIT_FAILURE
    if action == "stop":
        if not stop_daemon(config):
            print("  Scheduler is not running.")
            return EXIT_FAILURE
        print("  Scheduler stopped.")
        return EXIT_OK
    if action == "status":
        status = daemon_status(config)
        _print_daemon_status(status)
        return EXIT_OK if status["running"] else EXIT_FAILURE
    print("Error: expected one of: daemon start | stop | status", file=sys.stderr)
    return EXIT_USAGE


def _print_daemon_status(status: dict) -> None:
    print("\n" + "=" * 60)
    print("  drydock - Scheduler Status")
    print("=" * 60)
    state = f"running (PID {status['pid']})" if status["running"] else "stopped"
    print(f"  State:       {state}")
    print(f"  Started:     {status['started_at'] or '-'}")
    print(f"  Last poll:   {status['last_poll'] or '-'}")
    paused = status.get("paused")
    if paused:
        until = paused.get("resume_after") or "manual resume"
        print(f"  Paused:      {paused.get('reason')} (until {until})")
    print(f"  Queued:      {', '.join(f'#{n}' for n in status['queued']) or '-'}")
    print(f"  Completed:   {status['completed']} ({status['succeeded']} ok, {status['failed']} failed)")
    print("=" * 60)
    if status["active"]:
        print(f"\n  {'Issue':<8}  {'PID':>7}  {'Template':<10}  Title")
        print(f"  {'-' * 8}  {'-' * 7}  {'-' * 10}  {'-' * 30}")
        for job in status["active"]:
            print(f"  #{job['issue']:<7}  {job['pid'] or 0:>7}  {job['template']:<10}  {job['title'][:50]}")
    print()


# -- Pipeline -----------------------------------------------------------------


def _run_pipeline(args: argparse.Namespace, config: DrydockConfig) -> int:
    """Run one job's pipeline in the given workspace."""
    from drydock.cost_ledger import CostLedger
    from drydock.events import EventRecorder
    from drydock.git_tools import GitError, current_branch
    from drydock.pipeline import PipelineEngine
    from drydock.schemas import WorkItem
    from drydock.vitals import IterationModel, VitalsStore, build_vitals_engine
    from drydock.workspace import Workspace

    if getattr(args, "pipeline_command", None) != "run":
        print("Error: expected 'pipeline run'", file=sys.stderr)
        return EXIT_USAGE
    if args.issue is None and not args.goal:
        print("Error: pipeline run needs --issue or --goal", file=sys.stderr)
        return EXIT_USAGE

    feed = _build_feed(config)
    item: WorkItem | None = None
    if args.issue is not None:
        if feed is not None:
            try:
                item = feed.get_item(args.issue)
            except FeedError as exc:
                print(f"Error: issue not found or feed unavailable: {exc}", file=sys.stderr)
                return EXIT_FAILURE
        else:
            item = WorkItem(id=args.issue, title=args.goal.splitlines()[0][:80] if args.goal else f"Issue #{args.issue}")

    path = Path(args.workspace).expanduser().resolve() if args.workspace else Path.cwd().resolve()
    if not path.is_dir():
        print(f"Error: workspace path does not exist: {path}", file=sys.stderr)
        return EXIT_FAILURE
    try:
        branch = current_branch(path)
    except GitError as exc:
        print(f"Error: workspace is not a git checkout: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    workspace = Workspace(name=path.name, path=path, branch=branch)
    workspace.prepare_runtime()

    recorder = EventRecorder(config.events_path)
    ledger = CostLedger(config.costs_path, config.budget_path)
    try:
        engine = PipelineEngine(
            config,
            workspace,
            item=item,
            goal=args.goal,
            template=args.template or None,
            recorder=recorder,
            ledger=ledger,
            vitals=build_vitals_engine(
                config.vitals,
                ledger=ledger,
                recorder=recorder,
                iteration_model=IterationModel(config.iteration_model_path),
            ),
            vitals_store=VitalsStore(config.vitals_dir, max_snapshots=config.vitals.max_snapshots),
            feed=feed,
        )
    except (ValueError, ConfigError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    def _cancel(signum: int, _frame: object) -> None:
        logger.warning("Received signal %s; cancelling pipeline", signum)
        engine.cancel()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, _cancel)
        signal.signal(signal.SIGINT, _cancel)

    result = engine.run(resume=args.resume)

    # Summary
    print("\n" + "=" * 60)
    print("  drydock - Pipeline Summary")
    print("=" * 60)
    print(f"  Job:         {engine.job_id}")
    print(f"  Template:    {engine.template}")
    print(f"  Status:      {result.status.value}")
    if result.reason:
        print(f"  Reason:      {result.reason}")
    print(f"  Backtracks:  {result.state.backtrack_count}")
    print(f"  Extensions:  {result.state.extension_count}")
    print(f"  Elapsed:     {result.duration_seconds:.0f}s")
    print("=" * 60)
    if result.stage_results:
        print(f"\n  {'Stage':<18}  {'Status':<10}  {'Secs':>6}  Detail")
        print(f"  {'-' * 18}  {'-' * 10}  {'-' * 6}  {'-' * 30}")
        for r in result.stage_results:
            print(f"  {r.stage:<18}  {r.status.value:<10}  {r.duration_seconds:>6.0f}  {(r.error or r.skip_reason)[:60]}")
    print()
    return result.exit_code


# -- Triage -------------------------------------------------------------------


def _run_triage(args: argparse.Namespace, config: DrydockConfig) -> int:
    from drydock.events import EventRecorder
    from drydock.triage import TriageScorer

    feed = _build_feed(config)
    if feed is None:
        print("Error: triage needs feed.repo in the configuration", file=sys.stderr)
        return EXIT_USAGE
    try:
        items = [feed.get_item(n) for n in args.issue] if args.issue else feed.list_candidates()
    except FeedError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    if not items:
        print("  No candidate items.")
        return EXIT_OK

    scorer = TriageScorer(config.triage, recorder=EventRecorder(config.events_path), is_open=feed.is_open)
    ranked = scorer.rank(items)
    print(
        f"\n  {'Issue':<8}  {'Score':>5}  {'Pri':>3}  {'Age':>3}  {'Cpx':>3}  "
        f"{'Dep':>3}  {'Type':>4}  {'Mem':>4}  {'Template':<9}  Title"
    )
    print(f"  {'-' * 8}  {'-' * 5}  {'-' * 3}  {'-' * 3}  {'-' * 3}  {'-' * 3}  {'-' * 4}  {'-' * 4}  {'-' * 9}  {'-' * 30}")
    for item in ranked:
        b = scorer.breakdown(item, others=ranked)
        template = scorer.select_template(item)
        print(
            f"  #{item.id:<7}  {item.score:>5}  {b.priority:>3}  {b.age:>3}  {b.complexity:>3}  "
            f"{b.dependency:>3}  {b.type_bonus:>4}  {b.memory:>+4}  {template:<9}  {item.title[:50]}"
        )
    print()
    return EXIT_OK


# -- Vitals -------------------------------------------------------------------


def _run_vitals(args: argparse.Namespace, config: DrydockConfig) -> int:
    from drydock.cost_ledger import CostLedger
    from drydock.vitals import IterationModel, VitalsStore, build_vitals_engine

    store = VitalsStore(config.vitals_dir, max_snapshots=config.vitals.max_snapshots)
    history = store.load(args.job)
    if not history.snapshots:
        print(f"  No vitals recorded for {args.job}.")
        return EXIT_FAILURE
    ledger = CostLedger(config.costs_path, config.budget_path)
    engine = build_vitals_engine(config.vitals, ledger=ledger, iteration_model=IterationModel(config.iteration_model_path))
    health = engine.compute(history, prior=history.last_score)
    last = history.snapshots[-1]

    print("\n" + "=" * 60)
    print(f"  drydock - Vitals for {args.job}")
    print("=" * 60)
    print(f"  Score:          {health.score} ({health.verdict.value})")
    print(f"  Momentum:       {health.momentum}")
    print(f"  Convergence:    {health.convergence}")
    print(f"  Budget:         {health.budget}")
    print(f"  Error maturity: {health.error_maturity}")
    print(f"  Adaptive limit: {engine.adaptive_limit(health)}")
    print(f"  Budget status:  {engine.budget_trajectory(last.stage).value}")
    print(f"  Last stage:     {last.stage} (iteration {last.iteration})")
    if health.action:
        print(f"  Action:         {health.action}")
    print("=" * 60 + "\n")
    return EXIT_OK


# -- Incidents ----------------------------------------------------------------


def _run_incident(args: argparse.Namespace, config: DrydockConfig) -> int:
    from drydock.events import EventRecorder
    from drydock.incidents import IncidentStore, IncidentWatcher
    from drydock.notify import Notifier
    from drydock.scheduler import StateStore

    action = getattr(args, "incident_command", None)
    if action not in {"watch", "list", "report", "resolve"}:
        print("Error: expected one of: incident watch | list | report | resolve", file=sys.stderr)
        return EXIT_USAGE

    feed = _build_feed(config) if action == "watch" else None
    state = StateStore(config.daemon_state_path)
    watcher = IncidentWatcher(
        config.incidents,
        recorder=EventRecorder(config.events_path),
        store=IncidentStore(config.incidents_dir),
        feed=feed,
        feed_config=config.feed,
        enqueue=lambda issue, title: state.enqueue(issue, title),
        notifier=Notifier(config.notify),
        cwd=config.repo_path,
    )

    if action == "watch":
        stop = threading.Event()
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, lambda *_: stop.set())
            signal.signal(signal.SIGINT, lambda *_: stop.set())
        created = watcher.watch(interval=args.interval, stop_event=stop)
        print(f"  Incident watch stopped; {created} incident(s) created.")
        return EXIT_OK

    if action == "list":
        incidents = watcher.store.list()
        if not incidents:
            print("  No incidents recorded.")
            return EXIT_OK
        print(f"\n  {'Id':<24}  {'Sev':<3}  {'Status':<8}  {'Events':>6}  Root cause")
        print(f"  {'-' * 24}  {'-' * 3}  {'-' * 8}  {'-' * 6}  {'-' * 20}")
        for inc in incidents:
            print(
                f"  {inc.id:<24}  {inc.severity.value:<3}  {inc.status.value:<8}  "
                f"{len(inc.failure_events):>6}  {inc.root_cause}"
            )
        print(f"\n  {json.dumps(watcher.stats())}\n")
        return EXIT_OK

    try:
        if action == "report":
            path = watcher.report(args.incident_id)
            print(f"  Report written to {path}")
        else:
            incident = watcher.resolve(args.incident_id, note=args.note)
            print(f"  Incident {incident.id} resolved (MTTR {incident.mttr_seconds or 0:.0f}s)")
    except DrydockError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    return EXIT_OK


# -- Entry point --------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the appropriate command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    # -- Logging setup (early, for all commands) -----------------------------
    level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    if not args.command:
        parser.print_help()
        return EXIT_USAGE

    config_path = _config_path(args)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    if args.command == "daemon":
        return _run_daemon(args, config, config_path)
    if args.command == "pipeline":
        return _run_pipeline(args, config)
    if args.command == "triage":
        return _run_triage(args, config)
    if args.command == "vitals":
        return _run_vitals(args, config)
    if args.command == "incident":
        return _run_incident(args, config)
    parser.print_help()
    return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
