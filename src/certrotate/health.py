"""Bounded-time liveness checks for the managed service."""
from __future__ import annotations

import time
from collections.abc import Callable

import requests

from .models import ServiceControlError, ServiceController, ServiceState


class ServiceTransitionTimeout(RuntimeError):
    """Raised by callers when the service did not reach the desired state in time."""


class ReachabilityWarning(UserWarning):
    """The service came up but did not answer the post-start probe."""


class HealthVerifier:
    """Poll service liveness and probe public reachability."""

    def __init__(
        self,
        controller: ServiceController,
        *,
        poll_interval: float = 1.0,
        port: int = 443,
        probe_path: str = "/healthz",
        probe_timeout: float = 10.0,
        verify_tls: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        session: requests.Session | None = None,
    ) -> None:
        """Initialise the verifier; *clock* and *sleep* are injectable for tests."""
        self.controller = controller
        self.poll_interval = poll_interval
        self.port = port
        self.probe_path = probe_path if probe_path.startswith("/") else f"/{probe_path}"
        self.probe_timeout = probe_timeout
        self.verify_tls = verify_tls
        self._clock = clock
        self._sleep = sleep
        self._session = session or requests.Session()

    def observe(self) -> ServiceState:
        """Return the current service state (``UNKNOWN`` when the query fails)."""
        try:
            active = self.controller.is_active()
        except ServiceControlError:
            return ServiceState.UNKNOWN
        return ServiceState.ACTIVE if active else ServiceState.INACTIVE

    def await_state(self, desired_active: bool, timeout: float) -> ServiceState:
        """Poll until the service is (in)active or *timeout* seconds elapse.

        Returns ``ACTIVE``/``INACTIVE`` once the desired state is observed, or
        ``TRANSITION_TIMEOUT``. The state is checked at least once.
        """
        desired = ServiceState.ACTIVE if desired_active else ServiceState.INACTIVE
        deadline = self._clock() + timeout
        while True:
            if self.observe() is desired:
                return desired
            remaining = deadline - self._clock()
            if remaining <= 0:
                return ServiceState.TRANSITION_TIMEOUT
            self._sleep(min(self.poll_interval, remaining))

    def probe_url(self, domain: str) -> str:
        """Return the HTTPS URL probed for *domain*."""
        return f"https://{domain}:{self.port}{self.probe_path}"

    def probe_reachable(self, domain: str) -> bool:
        """Issue a single GET to the service; True only on ``200 OK``."""
        try:
            response = self._session.get(
                self.probe_url(domain),
                timeout=self.probe_timeout,
                verify=self.verify_tls,
            )
        except requests.RequestException:
            return False
        return response.status_code == 200


__all__ = ["HealthVerifier", "ReachabilityWarning", "ServiceTransitionTimeout"]
