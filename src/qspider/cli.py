"""Command-line interface for qspider.

Usage:
    qspider dsl.iso                       # Boot ISO, print stats every 4s
    qspider -m 1024 -c 4 dsl.iso          # Custom memory / vCPUs
    qspider --json -n 3 dsl.iso | jq .    # Three JSON samples, then stop
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import sys
from pathlib import Path
from typing import NoReturn

import click
from pydantic import ValidationError

from qspider import (
    QSpiderError,
    VmConfig,
    VmConfigError,
    VmManager,
    VmSpawnError,
    VmStats,
    __version__,
    constants,
)
from qspider._logging import configure_logging
from qspider.monitor import monitor_session

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_VM_EXITED = 1  # QEMU stopped before the requested samples were taken
EXIT_QSPIDER_ERROR = 125


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def format_stats_json(stats: VmStats) -> str:
    """One sample as a single JSON line."""
    return json.dumps(stats.model_dump(), separators=(",", ":"))


def format_stats_human(stats: VmStats) -> str:
    """One sample as a short multi-line block."""
    lines = [
        f"mem       {stats.mem_percent:.1f}%",
        f"cpu       {stats.cpu_percent:.1f}%",
    ]
    lines.extend(
        f"disk io   {d.device}: read {d.bytes_read} B, written {d.bytes_written} B" for d in stats.disks_io
    )
    lines.extend(f"disk      {d.device}: {d.size} KiB" for d in stats.disks)
    return "\n".join(lines)


async def run_monitor(
    iso: str,
    config: VmConfig,
    interval: float,
    samples: int | None,
    json_output: bool,
) -> int:
    """Boot the VM, print stats until interrupted or ``samples`` are taken.

    Returns:
        Exit code to return from CLI
    """
    taken = 0
    done = asyncio.Event()

    def on_stats(stats: VmStats) -> None:
        nonlocal taken
        if done.is_set():
            return
        click.echo(format_stats_json(stats) if json_output else format_stats_human(stats) + "\n")
        taken += 1
        if samples is not None and taken >= samples:
            done.set()

    def on_error(error: QSpiderError) -> None:
        click.echo(click.style(f"stats error: {error.message}", fg="yellow"), err=True)

    try:
        async with VmManager(config) as manager:
            session = await manager.start(iso)
            monitor = asyncio.create_task(monitor_session(session, on_stats, interval=interval, on_error=on_error))
            finished = asyncio.create_task(done.wait())
            try:
                await asyncio.wait({monitor, finished}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (monitor, finished):
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
            if not done.is_set():
                click.echo(
                    format_error(
                        "VM exited",
                        f"QEMU stopped on its own (exit status {session.process.returncode})",
                        ["Check the QEMU stderr lines logged above"],
                    ),
                    err=True,
                )
                return EXIT_VM_EXITED
        return EXIT_SUCCESS

    except VmSpawnError as e:
        click.echo(
            format_error(
                "Failed to start VM",
                e.message,
                [
                    "Check that QEMU is installed and QSPIDER_QEMU_BIN points at it",
                    "Set QSPIDER_ENABLE_KVM=false when /dev/kvm is unavailable",
                ],
            ),
            err=True,
        )
        return EXIT_QSPIDER_ERROR

    except VmConfigError as e:
        click.echo(
            format_error("Invalid VM configuration", e.message, ["Pass an existing directory to --images-dir"]),
            err=True,
        )
        return EXIT_QSPIDER_ERROR

    except QSpiderError as e:
        click.echo(format_error("qspider error", e.message), err=True)
        return EXIT_QSPIDER_ERROR


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("iso", type=click.Path(exists=True, dir_okay=False))
@click.option("-m", "--memory", default=constants.DEFAULT_MEMORY_MB, show_default=True, help="Guest memory in MB")
@click.option("-c", "--cpus", default=constants.DEFAULT_CPUS, show_default=True, help="vCPUs at boot")
@click.option("--max-cpus", default=constants.DEFAULT_MAX_CPUS, show_default=True, help="vCPU hotplug ceiling")
@click.option(
    "-i",
    "--interval",
    default=constants.DEFAULT_MONITOR_INTERVAL_SECONDS,
    show_default=True,
    type=float,
    help="Seconds between stats samples",
)
@click.option("-n", "--samples", type=click.IntRange(min=1), help="Stop after this many samples")
@click.option(
    "--images-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory disk paths are resolved against",
)
@click.option("--json", "json_output", is_flag=True, help="Output samples as JSON lines")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Library log level (overrides QSPIDER_LOG_LEVEL)",
)
@click.version_option(__version__, "-V", "--version", prog_name="qspider")
def main(
    iso: str,
    memory: int,
    cpus: int,
    max_cpus: int,
    interval: float,
    samples: int | None,
    images_dir: Path | None,
    json_output: bool,
    quiet: bool,
    log_level: str | None,
) -> NoReturn:
    """Boot ISO under QEMU and print its resource usage periodically.

    Stops the VM on Ctrl-C or after --samples samples.
    """
    configure_logging(level=log_level.upper() if log_level else None, quiet=quiet)

    if interval <= 0:
        raise click.UsageError("--interval must be positive")

    try:
        config = VmConfig(memory_mb=memory, cpus=cpus, max_cpus=max_cpus, images_dir=images_dir)
    except ValidationError as exc:
        raise click.UsageError(f"Invalid VM configuration: {exc.errors()[0]['msg']}") from exc

    try:
        exit_code = asyncio.run(run_monitor(iso, config, interval, samples, json_output))
    except KeyboardInterrupt:
        exit_code = EXIT_SUCCESS

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
