"""
foreman command line.

    foreman [--config PATH] validate
    foreman list [--count N]
    foreman add --name NAME --type Python|Bash --file PATH [--tag TAG ...] [--schedule CRON ...]
    foreman remove ID
    foreman run ID
    foreman history ID [--from-log]
    foreman schedule add|remove ID CRON
    foreman enable|disable [--script ID]
    foreman daemon
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from pathlib import Path
from typing import Any, List, Optional

from foreman.config import DEFAULT_CONFIG, ForemanConfig, build_controller, build_event_log, load_config
from foreman.cron import describe_cron, is_valid_cron, next_fire_times
from foreman.errors import ForemanError
from foreman.logs import setup_logging
from foreman.models import SCRIPT_TYPES
from foreman.state import SchedulerStateStore
from foreman.store import ScriptStore

DEFAULT_PREVIEW_COUNT = 3

logger = logging.getLogger("foreman.cli")


def _on_off(enabled: bool) -> str:
    return "enabled" if enabled else "disabled"


def command_validate(config: ForemanConfig) -> int:
    scripts = ScriptStore(config.scripts_file).load()
    state = SchedulerStateStore(config.state_file).load()
    invalid = 0
    print(f"Data directory: {config.data_dir}")
    print(f"Timezone: {config.timezone_name}")
    print(f"Global scheduler: {_on_off(state.global_enabled)}")
    print(f"Total scripts: {len(scripts)}")
    for script in scripts:
        for schedule in script.schedules:
            if not is_valid_cron(schedule):
                invalid += 1
                print(f"- {script.name} ({script.id}): invalid schedule {schedule!r}")
    if invalid:
        print(f"Invalid schedules: {invalid}")
        return 1
    print("All schedules valid.")
    return 0


def command_list(config: ForemanConfig, count: int) -> int:
    scripts = ScriptStore(config.scripts_file).load()
    state = SchedulerStateStore(config.state_file).load()
    print(f"Global scheduler: {_on_off(state.global_enabled)}")
    for script in scripts:
        print("=" * 80)
        print(f"{script.name} [{script.type}] id={script.id}")
        if script.tags:
            print(f"Tags: {', '.join(script.tags)}")
        print(f"Scheduler: {_on_off(state.script_enabled(script.id))}")
        if not script.schedules:
            print("Schedules: none")
            continue
        print("Schedules:")
        for schedule in script.schedules:
            if not is_valid_cron(schedule):
                print(f"- {schedule} (invalid)")
                continue
            print(f"- {schedule}: {describe_cron(schedule)}")
            if state.allows(script.id):
                for run_dt in next_fire_times(schedule, count, config.timezone):
                    print(f"    {run_dt.astimezone(config.timezone).isoformat()}")
    if scripts:
        print("=" * 80)
    return 0


def command_add(
    config: ForemanConfig,
    name: str,
    script_type: str,
    file_path: Path,
    tags: List[str],
    schedules: List[str],
    dependencies: str,
) -> int:
    try:
        code = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ForemanError(f"Error: Failed to read {file_path}: {exc}") from exc
    controller = build_controller(config)
    script = controller.create_script(
        name=name,
        script_type=script_type,
        code=code,
        dependencies=dependencies,
        tags=tags,
        schedules=schedules,
    )
    print(script.id)
    return 0


def command_remove(config: ForemanConfig, script_id: str) -> int:
    build_controller(config).delete_script(script_id)
    print(f"Removed {script_id}")
    return 0


def command_run(config: ForemanConfig, script_id: str) -> int:
    execution = build_controller(config).run_now(script_id)
    print(f"Status: {execution.status} ({execution.runtime}ms)")
    if execution.log:
        print(execution.log, end="" if execution.log.endswith("\n") else "\n")
    return 0 if execution.success else 1


def command_history(config: ForemanConfig, script_id: str, from_log: bool) -> int:
    if from_log:
        events = build_event_log(config)
        try:
            rows: List[Any] = events.recent_executions(script_id)
        finally:
            events.close()
        for row in rows:
            trigger = "schedule" if row.get("triggeredBySchedule") else "manual"
            print(f"{row.get('timestamp')} {row.get('status')} {row.get('runtime')}ms {trigger}")
        return 0

    script = ScriptStore(config.scripts_file).get(script_id)
    for execution in script.executions:
        trigger = "schedule" if execution.triggered_by_schedule else "manual"
        print(f"{execution.timestamp.isoformat()} {execution.status} {execution.runtime}ms {trigger}")
    return 0


def command_schedule(config: ForemanConfig, action: str, script_id: str, cron_expr: str) -> int:
    controller = build_controller(config)
    if action == "add":
        script = controller.add_schedule(script_id, cron_expr)
    else:
        script = controller.remove_schedule(script_id, cron_expr)
    for schedule in script.schedules:
        print(f"- {schedule}: {describe_cron(schedule)}")
    return 0


def command_toggle(config: ForemanConfig, enabled: bool, script_id: Optional[str]) -> int:
    controller = build_controller(config)
    if script_id is None:
        controller.set_global_enabled(enabled)
        print(f"Global scheduler {_on_off(enabled)}")
    else:
        controller.set_script_enabled(script_id, enabled)
        print(f"Scheduler for {script_id} {_on_off(enabled)}")
    return 0


def command_daemon(config: ForemanConfig) -> int:
    events = build_event_log(config)
    controller = build_controller(config, events)
    stop_event = threading.Event()
    reload_event = threading.Event()

    def _handle_stop(signum: int, _: Any) -> None:
        if stop_event.is_set():
            return
        logger.info("Received signal %s, shutting down scheduler...", signum)
        stop_event.set()

    def _handle_reload(signum: int, _: Any) -> None:
        logger.info("Received signal %s, reloading scheduler...", signum)
        reload_event.set()

    for sig_name in ("SIGINT", "SIGTERM"):
        if hasattr(signal, sig_name):
            signal.signal(getattr(signal, sig_name), _handle_stop)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _handle_reload)

    registered = controller.initialize()
    logger.info("Scheduler daemon started with %s job(s); timezone=%s", registered, config.timezone_name)
    dispatcher = threading.Thread(
        target=controller.registry.run_forever,
        args=(stop_event, config.poll_seconds),
        daemon=True,
        name="foreman-dispatch",
    )
    dispatcher.start()
    try:
        while not stop_event.wait(config.poll_seconds):
            if reload_event.is_set():
                reload_event.clear()
                controller.initialize()
            else:
                controller.refresh()
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        stop_event.set()
    finally:
        dispatcher.join(timeout=config.poll_seconds + 1)
        stopped = controller.registry.stop_all()
        logger.info("Scheduler daemon stopped (%s job(s) cleared).", stopped)
        events.close()
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="foreman script scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to foreman YAML config (default: {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", help="Validate config and stored schedules")

    list_parser = subparsers.add_parser("list", help="List scripts with schedule previews")
    list_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    add_parser = subparsers.add_parser("add", help="Register a script from a file")
    add_parser.add_argument("--name", required=True, help="Display name")
    add_parser.add_argument("--type", dest="script_type", required=True, choices=sorted(SCRIPT_TYPES))
    add_parser.add_argument("--file", required=True, help="Path to the script source")
    add_parser.add_argument("--tag", action="append", default=[], help="Tag (repeatable)")
    add_parser.add_argument("--schedule", action="append", default=[], help="Cron expression (repeatable)")
    add_parser.add_argument("--dependencies", default="", help="Free-form dependency notes")

    remove_parser = subparsers.add_parser("remove", help="Delete a script and its jobs")
    remove_parser.add_argument("script_id")

    run_parser = subparsers.add_parser("run", help="Run a script once now")
    run_parser.add_argument("script_id")

    history_parser = subparsers.add_parser("history", help="Show recent executions")
    history_parser.add_argument("script_id")
    history_parser.add_argument(
        "--from-log",
        action="store_true",
        help="Read execution summaries from the event log instead of the script store",
    )

    schedule_parser = subparsers.add_parser("schedule", help="Add or remove a cron schedule")
    schedule_parser.add_argument("action", choices=["add", "remove"])
    schedule_parser.add_argument("script_id")
    schedule_parser.add_argument("cron", help='Cron expression, e.g. "*/5 * * * *"')

    for command, verb in (("enable", "Enable"), ("disable", "Disable")):
        toggle_parser = subparsers.add_parser(command, help=f"{verb} the global or a per-script scheduler")
        toggle_parser.add_argument("--script", dest="script_id", help="Script id (default: global)")

    subparsers.add_parser("daemon", help="Run scheduler daemon loop")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    explicit = args.config is not None
    config_path = Path(args.config or DEFAULT_CONFIG).resolve()

    try:
        config = load_config(config_path, explicit=explicit)
    except ForemanError as exc:
        setup_logging()
        logger.error(str(exc))
        return 1
    setup_logging(config.process_log_file)

    try:
        if args.command == "validate":
            return command_validate(config)
        if args.command == "list":
            if args.count <= 0:
                raise ForemanError("--count must be >= 1")
            return command_list(config, args.count)
        if args.command == "add":
            return command_add(
                config,
                name=args.name,
                script_type=args.script_type,
                file_path=Path(args.file),
                tags=args.tag,
                schedules=args.schedule,
                dependencies=args.dependencies,
            )
        if args.command == "remove":
            return command_remove(config, args.script_id)
        if args.command == "run":
            return command_run(config, args.script_id)
        if args.command == "history":
            return command_history(config, args.script_id, from_log=args.from_log)
        if args.command == "schedule":
            return command_schedule(config, args.action, args.script_id, args.cron)
        if args.command in ("enable", "disable"):
            return command_toggle(config, args.command == "enable", args.script_id)
        if args.command == "daemon":
            return command_daemon(config)
        raise ForemanError(f"Unsupported command: {args.command}")
    except ForemanError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
