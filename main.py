from __future__ import annotations

import argparse
import getpass
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from dcabot.auth.session import AuthSession
from dcabot.broker.capability import BrokerError
from dcabot.broker.rest_client import RestBrokerClient
from dcabot.clock import from_timestamp, utc_now
from dcabot.config import AppConfig, apply_env_overrides, load_config
from dcabot.errors import DcaError, MfaRequiredError, PasswordMissingError
from dcabot.execution.engine import ExecutionEngine
from dcabot.execution.runner import BatchReport, run_batch, run_one
from dcabot.jobs.models import (
    DailySchedule,
    Job,
    MonthlySchedule,
    OrderArgs,
    OrderCommand,
    OrderPassed,
    Schedule,
    WeeklySchedule,
)
from dcabot.jobs.schedule import job_is_due
from dcabot.monitoring.notifier import NotifierConfig, OrderNotifier
from dcabot.storage.credentials import ChainedCredentialSource, EnvCredentialSource, FileCredentialSource
from dcabot.storage.files import resolve_data_dir, write_json
from dcabot.storage.history import OrderHistory
from dcabot.storage.job_store import JobStore

LOGGER = logging.getLogger("dcabot")

# Unattended runs always end the process with this status, except when the
# password is missing: then control goes back to the interactive surface.
EXIT_UNATTENDED = 255
EXIT_HANDOFF = 0
EXIT_ERROR = 1


@dataclass(slots=True)
class AppRuntime:
    config: AppConfig
    data_dir: Path
    job_store: JobStore
    history: OrderHistory
    credentials: ChainedCredentialSource
    session: AuthSession
    engine: ExecutionEngine


def _add_order_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--account", required=True)
    parser.add_argument("--symbol", required=True)
    size_group = parser.add_mutually_exclusive_group(required=True)
    size_group.add_argument("--quantity", type=int)
    size_group.add_argument("--amount", type=float)
    parser.add_argument("--side", choices=["buy", "sell"], default="buy")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recurring order (DCA) scheduler")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    commands = parser.add_subparsers(dest="command", required=True)

    trade = commands.add_parser("trade", help="Trading actions")
    trade_commands = trade.add_subparsers(dest="trade_command", required=True)
    trade_commands.add_parser("orders", help="Run every due job now with stored credentials (unattended)")

    jobs = commands.add_parser("jobs", help="Manage scheduled jobs")
    jobs_commands = jobs.add_subparsers(dest="jobs_command", required=True)
    jobs_commands.add_parser("list", help="List scheduled jobs")
    add = jobs_commands.add_parser("add", help="Schedule a recurring order")
    schedule_group = add.add_mutually_exclusive_group(required=True)
    schedule_group.add_argument("--daily", action="store_true")
    schedule_group.add_argument("--weekly", type=int, metavar="DAY")
    schedule_group.add_argument("--monthly", type=int, metavar="DAY")
    _add_order_arguments(add)
    delete = jobs_commands.add_parser("delete", help="Delete a scheduled job")
    delete.add_argument("job_id")

    orders = commands.add_parser("orders", help="Order history and one-off orders")
    orders_commands = orders.add_subparsers(dest="orders_command", required=True)
    orders_commands.add_parser("list", help="List passed orders")
    place = orders_commands.add_parser("place", help="Log in interactively and place a one-off order now")
    _add_order_arguments(place)

    run_job = commands.add_parser("run-job", help="Log in interactively and run one job now")
    run_job.add_argument("job_id")
    return parser.parse_args(argv)


def setup_logging(level: str, log_file: str | Path | None = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        handlers=handlers,
    )


def build_client(config: AppConfig) -> RestBrokerClient:
    broker = config.broker
    return RestBrokerClient(
        base_url=broker.base_url,
        api_key=os.getenv("BROKER_API_KEY"),
        timeout_seconds=broker.timeout_seconds,
        rate_limit_rps=broker.rate_limit_rps,
        rate_limit_burst=broker.rate_limit_burst,
        request_max_attempts=broker.request_max_attempts,
        backoff_base_seconds=broker.backoff_base_seconds,
        backoff_max_seconds=broker.backoff_max_seconds,
    )


def build_runtime(config: AppConfig, data_dir: Path) -> AppRuntime:
    storage = config.storage
    history = OrderHistory.in_dir(data_dir, storage.history_file)
    notifier = OrderNotifier(
        NotifierConfig(
            enabled=config.notifications.enabled,
            discord_webhook=config.notifications.discord_webhook,
            telegram_bot_token=config.notifications.telegram_bot_token,
            telegram_chat_id=config.notifications.telegram_chat_id,
        )
    )
    return AppRuntime(
        config=config,
        data_dir=data_dir,
        job_store=JobStore.in_dir(data_dir, storage.jobs_file),
        history=history,
        credentials=ChainedCredentialSource(
            FileCredentialSource.in_dir(data_dir, storage.credentials_file),
            EnvCredentialSource(),
        ),
        session=AuthSession(lambda: build_client(config)),
        engine=ExecutionEngine(history=history, notifier=notifier),
    )


def build_schedule(args: argparse.Namespace) -> Schedule:
    if args.weekly is not None:
        return WeeklySchedule(day=args.weekly)
    if args.monthly is not None:
        return MonthlySchedule(day=args.monthly)
    return DailySchedule()


def build_order_args(args: argparse.Namespace) -> OrderArgs:
    return OrderArgs(
        account=args.account,
        symbol=args.symbol,
        quantity=args.quantity,
        amount=args.amount,
        side=args.side,
    )


def describe_job(job: Job, timezone_name: str) -> str:
    last_run = from_timestamp(job.last_run, timezone_name).isoformat(timespec="seconds")
    due = "due" if job_is_due(job, utc_now(), timezone_name) else "-"
    return f"{job.id}\t{job.schedule.kind}\tlast_run={last_run}\t{due}"


def run_unattended(runtime: AppRuntime) -> int:
    try:
        report = run_batch(
            credentials=runtime.credentials,
            job_store=runtime.job_store,
            engine=runtime.engine,
            session=runtime.session,
            timezone_name=runtime.config.timezone,
        )
    except PasswordMissingError as exc:
        pending_path = runtime.data_dir / runtime.config.storage.pending_file
        write_json(pending_path, [job.to_json() for job in exc.pending_jobs])
        LOGGER.warning("Password missing, %d job(s) waiting for confirmation in %s", len(exc.pending_jobs), pending_path)
        for job in exc.pending_jobs:
            print(describe_job(job, runtime.config.timezone))
        return EXIT_HANDOFF
    except MfaRequiredError as exc:
        LOGGER.error(
            "Broker asked for an MFA code (%s) during an unattended run, use run-job interactively",
            exc.challenge.mfa_type.value,
        )
        return EXIT_UNATTENDED
    except (DcaError, BrokerError) as exc:
        LOGGER.error("Unattended run failed: %s", exc)
        return EXIT_UNATTENDED

    for job_id, error in report.failures.items():
        LOGGER.error("Job %s failed: %s", job_id, error)
    _log_batch_summary(report, runtime.session.client)
    return EXIT_UNATTENDED


def _log_batch_summary(report: BatchReport, client: object) -> None:
    metrics = client.metrics_snapshot() if isinstance(client, RestBrokerClient) else {}
    LOGGER.info(
        "Batch summary due=%d executed=%d failed=%d api_requests=%d retries=%d http429=%d disconnects=%d",
        len(report.due),
        len(report.executed),
        len(report.failures),
        metrics.get("total_requests", 0),
        metrics.get("total_retries", 0),
        metrics.get("http_429_count", 0),
        metrics.get("network_disconnects", 0),
    )


def interactive_login(
    runtime: AppRuntime,
    *,
    prompt: Callable[[str], str] = input,
    secret_prompt: Callable[[str], str] = getpass.getpass,
) -> None:
    creds = runtime.credentials.read()
    client_id = creds.client_id or prompt("Client id: ").strip()
    password = creds.password or secret_prompt("Password: ")
    try:
        runtime.session.login(client_id, password)
        return
    except MfaRequiredError as exc:
        pending = exc
    while True:
        code = prompt(f"Code sent by {pending.challenge.mfa_type.value}: ").strip()
        try:
            runtime.session.submit_mfa(pending.challenge, code)
            return
        except MfaRequiredError as exc:
            pending = exc


def _describe_order(order: OrderPassed) -> str:
    return f"order {order.id}: {order.args.side} {order.args.quantity} {order.args.symbol} @ {order.price}"


def run_job_interactively(runtime: AppRuntime, job_id: str) -> int:
    try:
        job = runtime.job_store.get(job_id)
        interactive_login(runtime)
        order = run_one(job, runtime.session, engine=runtime.engine, job_store=runtime.job_store)
    except (DcaError, BrokerError, NotImplementedError) as exc:
        print(f"error: {exc}")
        return EXIT_ERROR
    print(_describe_order(order))
    return 0


def place_order_interactively(runtime: AppRuntime, order_args: OrderArgs) -> int:
    try:
        interactive_login(runtime)
        order = runtime.engine.submit_order(order_args, runtime.session)
    except (DcaError, BrokerError) as exc:
        print(f"error: {exc}")
        return EXIT_ERROR
    print(_describe_order(order))
    return 0


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    load_dotenv()

    config = apply_env_overrides(load_config(args.config))
    data_dir = resolve_data_dir(config.data_dir)
    log_file = os.getenv("LOG_FILE")
    if not log_file and args.command == "trade":
        log_file = str(data_dir / "logs" / "dcabot.log")
    setup_logging(os.getenv("LOG_LEVEL", "INFO"), log_file)

    runtime = build_runtime(config, data_dir)
    LOGGER.debug("Data directory: %s", data_dir)

    if args.command == "trade":
        return run_unattended(runtime)

    if args.command == "jobs":
        if args.jobs_command == "list":
            for job in runtime.job_store.load():
                print(describe_job(job, config.timezone))
            return 0
        if args.jobs_command == "add":
            job = Job.create(build_schedule(args), OrderCommand(order=build_order_args(args)))
            runtime.job_store.upsert(job)
            print(job.id)
            return 0
        runtime.job_store.delete(args.job_id)
        return 0

    if args.command == "orders":
        if args.orders_command == "place":
            return place_order_interactively(runtime, build_order_args(args))
        for order in runtime.history.load():
            print(f"{order.id}\t{order.args.side}\t{order.args.quantity}\t{order.args.symbol}\t{order.price}")
        return 0

    return run_job_interactively(runtime, args.job_id)


if __name__ == "__main__":
    raise SystemExit(run())
