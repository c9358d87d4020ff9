# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Command Line Interface for layerup.
"""
import json
import logging
import signal
import threading
import time
from contextlib import contextmanager

import click

from ..MANAGERS.environment_manager import EnvironmentManager
from ..MANAGERS.readiness_prober import ReadinessProber
from ..MANAGERS.service_orchestrator import Orchestrator
from ..MODELS.orchestration_config import Runtime
from ..MODELS.run_result import OrchestrationReport
from ..PARSERS.config_parser import ConfigParser
from ..RUNNERS.service_starter import build_starter
from ..exceptions import LayerupError

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_NOT_READY = 2

LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


@contextmanager
def cancel_on_interrupt(cancel: threading.Event):
    """
    Turns Ctrl+C into a cancellation of the running orchestration.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame):
        click.echo("\nCancelling... services already up are left running.", err=True)
        cancel.set()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def print_report(report: OrchestrationReport):
    click.echo(f"{'SERVICE':15} {'STATUS':10} {'ATTEMPTS':>8} {'ELAPSED':>9}  DETAIL")
    click.echo("-" * 60)
    for name, result in report.results.items():
        detail = str(result.last_error) if result.last_error else ""
        if result.state.value == "pending":
            detail = "not started"
        click.echo(
            f"{name:15} {result.state.value:10} {result.attempts:>8} "
            f"{result.elapsed:>8.1f}s  {detail}"
        )
    if report.cleaned_up:
        click.echo(f"Cleaned up: {', '.join(report.cleaned_up)}")

    if report.overall_ok:
        click.echo("All services are ready.")
    elif report.cancelled:
        click.echo("Startup cancelled.")
    else:
        failed = ", ".join(r.service_name for r in report.failed())
        click.echo(f"Startup failed: {failed}")


@click.group()
@click.option('--log-level', type=click.Choice(LOG_LEVELS, case_sensitive=False),
              default='INFO', help='Verbosity of the log on stderr')
@click.pass_context
def cli(ctx, log_level):
    """
    layerup - layered service startup with readiness gating.

    Starts a deployment one dependency layer at a time and waits for every
    service to answer its readiness probe before moving on.
    """
    ctx.ensure_object(dict)
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        force=True,
    )


@cli.command()
@click.argument('config_path', type=click.Path(dir_okay=False))
@click.option('--json', 'as_json', is_flag=True, help='Print the report as JSON')
@click.option('--variant', default=None, help='Variant to deploy, overriding the file')
@click.option('--skip-prepare', is_flag=True, help='Do not run the prepare steps')
@click.option('--detach', '-d', is_flag=True,
              help='With the process runtime, exit instead of waiting for Ctrl+C')
@click.pass_context
def run(ctx, config_path, as_json, variant, skip_prepare, detach):
    """Start services layer by layer and report readiness."""
    parser = ConfigParser()
    try:
        config = parser.parse(config_path)
        graph = parser.build_graph(config)
        graph.validate()
        context = EnvironmentManager(config.project_dir).resolve(config, variant)
        starter = build_starter(config, context)
        if not skip_prepare:
            starter.prepare(config.prepare)
    except LayerupError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_INVALID)

    # command probes see the same environment as the services they check
    prober = ReadinessProber(config.policy.probe_timeout, environment=starter.environment())
    orchestrator = Orchestrator(starter, prober=prober, policy=config.policy)
    cancel = threading.Event()
    with cancel_on_interrupt(cancel):
        report = orchestrator.run(graph, cancel)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        print_report(report)

    if config.runtime == Runtime.PROCESS and report.overall_ok and not detach:
        click.echo("Running... Press Ctrl+C to stop.")
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            click.echo("\nStopping services...")
            orchestrator.teardown(graph, report)

    ctx.exit(EXIT_OK if report.overall_ok else EXIT_NOT_READY)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
