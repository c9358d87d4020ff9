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
Layered startup of multiple services with readiness gating.

Layers run strictly one after another. Inside a layer every service is
started and probed on its own worker thread; the next layer begins only
once every worker of the current one has returned.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
    wait_fixed,
)

from ..MODELS.orchestration_config import BackoffStrategy, OrchestrationPolicy, StartFailurePolicy
from ..MODELS.run_result import (
    OrchestrationReport,
    ProbeAttempt,
    RunResult,
    ServiceState,
    utc_timestamp,
)
from ..MODELS.service_definition import Service
from ..RUNNERS.dependency_resolver import ServiceGraph
from ..exceptions import (
    CancelledError,
    ProbeConfigError,
    ProbeTimeoutError,
    StartError,
)
from .readiness_prober import ProbeResult, ReadinessProber

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Walks a ServiceGraph layer by layer: start, probe until ready, move on.
    Halts at the first layer that leaves a service failed.
    """
    def __init__(self,
                 starter,
                 prober: Optional[ReadinessProber] = None,
                 policy: Optional[OrchestrationPolicy] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Optional[Callable[[float], None]] = None):
        """
        Initializes the orchestrator.

        :param starter: Start collaborator (see RUNNERS.service_starter.ServiceStarter).
        :param prober: Readiness prober; built from the policy's probe timeout if omitted.
        :param policy: Backoff, start failure and worker settings.
        :param clock: Monotonic clock used for elapsed times.
        :param sleep: Wait between probes. Defaults to waiting on the cancel
                      event, so a cancellation cuts the wait short.
        """
        self.starter = starter
        self.policy = policy or OrchestrationPolicy()
        self.prober = prober or ReadinessProber(timeout=self.policy.probe_timeout)
        self.clock = clock
        self._sleep = sleep
        self._states: Dict[str, ServiceState] = {}

    def states(self) -> Dict[str, ServiceState]:
        """
        Current state of every service of the latest run.
        """
        return dict(self._states)

    def run(self, graph: ServiceGraph, cancel_event: Optional[threading.Event] = None) -> OrchestrationReport:
        """
        Brings the graph up in dependency order.

        :param graph: The services to start. Not modified.
        :param cancel_event: Set it to abort at the next probe boundary.
        :return: One RunResult per service of the graph.
        :raises GraphError: If the graph is invalid; nothing is started then.
        """
        graph.validate()
        cancel = cancel_event or threading.Event()
        self._states = {name: ServiceState.PENDING for name in graph.names()}

        results: Dict[str, RunResult] = {}
        ready_order: List[str] = []
        halted = False

        for index, layer in enumerate(graph.layers(), start=1):
            if cancel.is_set():
                logger.warning("Cancelled before layer %d: %s", index, ", ".join(layer))
                break

            logger.info("Starting layer %d: %s", index, ", ".join(layer))
            layer_results = self._run_layer(graph, layer, cancel)
            results.update(layer_results)
            ready_order.extend(name for name in layer if layer_results[name].ready)

            failed = sorted(name for name, r in layer_results.items() if not r.ready)
            if failed:
                logger.error(
                    "Layer %d did not come up (%s); later layers will not be started",
                    index, ", ".join(failed),
                )
                halted = True
                break

        for name in graph.names():
            results.setdefault(name, RunResult(service_name=name))

        cancelled = cancel.is_set()
        cleaned_up: List[str] = []
        if halted and not cancelled:
            cleaned_up = self._cleanup(graph, ready_order)

        overall_ok = all(r.ready for r in results.values())
        return OrchestrationReport(
            results={name: results[name] for name in graph.names()},
            overall_ok=overall_ok,
            cancelled=cancelled,
            cleaned_up=tuple(cleaned_up),
        )

    def teardown(self, graph: ServiceGraph, report: Optional[OrchestrationReport] = None) -> List[str]:
        """
        Stops services in reverse dependency order. Errors are logged, not raised.

        :param graph: The deployed services.
        :param report: If given, only services this run started are stopped.
        :return: Names of the services stopped.
        """
        stopped = []
        for name in graph.shutdown_order():
            if report is not None and not report.results[name].started:
                continue
            logger.info("Stopping service: %s...", name)
            try:
                self.starter.stop(graph.get(name))
            except Exception as e:
                logger.warning("Failed to stop %s: %s", name, e)
                continue
            stopped.append(name)
        return stopped

    def _transition(self, name: str, state: ServiceState) -> None:
        self._states[name] = state
        logger.info("%s -> %s", name, state.value)

    def _run_layer(self, graph: ServiceGraph, layer: Sequence[str], cancel: threading.Event) -> Dict[str, RunResult]:
        workers = min(self.policy.max_workers or len(layer), len(layer))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="layerup") as pool:
            futures = {name: pool.submit(self._bring_up, graph.get(name), cancel) for name in layer}
        # leaving the pool joins every worker, so all slots are final here
        return {name: future.result() for name, future in futures.items()}

    def _bring_up(self, service: Service, cancel: threading.Event) -> RunResult:
        """
        Starts one service and probes it to a terminal state. Never raises;
        every failure ends up in the returned RunResult.
        """
        name = service.name
        if cancel.is_set():
            return RunResult(service_name=name)

        began = self.clock()
        self._transition(name, ServiceState.STARTING)

        start_error: Optional[StartError] = None
        try:
            self.starter.start(service)
        except StartError as e:
            start_error = e
        except Exception as e:
            start_error = StartError(name, e)

        max_attempts = service.max_attempts
        if start_error is not None:
            logger.error("%s", start_error)
            if self.policy.on_start_failure == StartFailurePolicy.FAIL_FAST:
                self._transition(name, ServiceState.FAILED)
                return RunResult(
                    service_name=name,
                    state=ServiceState.FAILED,
                    elapsed=self.clock() - began,
                    last_error=start_error,
                )
            max_attempts = 1

        self._transition(name, ServiceState.PROBING)
        probe_log: List[ProbeAttempt] = []
        error: Optional[Exception] = None
        try:
            outcome = self._probe(service, max_attempts, probe_log, cancel)
        except (CancelledError, ProbeConfigError) as e:
            outcome, error = None, e
        except Exception as e:
            logger.exception("Unexpected error while probing %s", name)
            outcome, error = None, e

        ready = outcome is not None and outcome.ready
        if not ready and error is None:
            error = start_error or ProbeTimeoutError(name, len(probe_log), outcome.detail)
        if ready and start_error is not None:
            logger.warning("%s came up although its start action failed", name)

        state = ServiceState.READY if ready else ServiceState.FAILED
        self._transition(name, state)
        if error is not None:
            logger.error("%s", error)

        return RunResult(
            service_name=name,
            state=state,
            started=start_error is None,
            ready=ready,
            attempts=len(probe_log),
            elapsed=self.clock() - began,
            last_error=None if ready else error,
            probe_log=tuple(probe_log),
        )

    def _probe(self,
               service: Service,
               max_attempts: int,
               probe_log: List[ProbeAttempt],
               cancel: threading.Event) -> ProbeResult:
        """
        Probes until ready or out of attempts and returns the last result.
        Every failed attempt is followed by a wait, the last one included, so
        an exhausted service has been given its whole max_wait_seconds.

        :raises CancelledError: At the first attempt boundary after cancellation.
        :raises ProbeConfigError: If the readiness check is malformed.
        """
        def attempt_once() -> ProbeResult:
            if cancel.is_set():
                raise CancelledError(service.name)
            number = len(probe_log) + 1
            try:
                result = self.prober.probe(service.readiness, number)
            except ProbeConfigError as e:
                probe_log.append(ProbeAttempt(number, utc_timestamp(), False, str(e)))
                raise
            probe_log.append(ProbeAttempt(number, utc_timestamp(), result.ready, result.detail))
            return result

        stop = stop_after_attempt(max_attempts)
        if self.policy.backoff == BackoffStrategy.EXPONENTIAL:
            stop = stop | stop_after_delay(service.max_wait_seconds)

        wait = self._wait_strategy(service)
        sleep = self._sleep or cancel.wait
        began = self.clock()

        def exhausted(retry_state) -> ProbeResult:
            # the last failed attempt also gets its interval, within max_wait_seconds
            remaining = service.max_wait_seconds - (self.clock() - began)
            delay = min(wait(retry_state), max(0.0, remaining))
            if delay > 0:
                sleep(delay)
            if cancel.is_set():
                raise CancelledError(service.name)
            return retry_state.outcome.result()

        retryer = Retrying(
            stop=stop,
            wait=wait,
            retry=retry_if_result(lambda result: not result.ready),
            sleep=sleep,
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            retry_error_callback=exhausted,
        )
        return retryer(attempt_once)

    def _wait_strategy(self, service: Service):
        interval = service.retry_interval_seconds
        if self.policy.backoff == BackoffStrategy.EXPONENTIAL:
            return wait_exponential(
                multiplier=interval, min=interval, max=max(interval, service.max_wait_seconds)
            )
        return wait_fixed(interval)

    def _cleanup(self, graph: ServiceGraph, ready_order: List[str]) -> List[str]:
        """
        Best-effort stop of ready services with a registered cleanup, newest first.
        """
        cleaned = []
        for name in reversed(ready_order):
            service = graph.get(name)
            registered = getattr(self.starter, "cleanup_registered", None)
            if not (registered(service) if registered else service.has_cleanup):
                continue
            logger.info("Cleaning up %s after failed startup", name)
            try:
                self.starter.stop(service)
            except Exception as e:
                logger.warning("Cleanup of %s failed: %s", name, e)
                continue
            cleaned.append(name)
        return cleaned
