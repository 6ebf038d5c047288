"""
Phased launch of an instance.

Profiles start strictly one after another in fixed precedence
(drivers -> skillsets -> executors), each with its own detached
`docker compose up`. Executors wait `executor_delay` seconds first so that
drivers and skillsets are ready before executors connect to them.

A failing phase stops the sequence and propagates; phases already started
are left running for the caller's teardown to reclaim.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Sequence

from coral.compose.profiles import PHASE_ORDER, Profile
from coral.tools.docker import DockerClient
from coral.utils import print_info

logger = logging.getLogger(__name__)

PHASE_SYMBOLS = {
    Profile.DRIVERS.value: "🎮",
    Profile.SKILLSETS.value: "🧠",
    Profile.EXECUTORS.value: "🚀",
}


class PhasedLauncher:
    """Brings an instance's profiles up in precedence order."""

    def __init__(
        self,
        docker: DockerClient,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.docker = docker
        self.sleep = sleep

    def launch(
        self,
        phases: Sequence[str],
        instance_name: str,
        compose_file: str,
        executor_delay: float = 0.0,
        phase_services: Optional[Dict[str, List[str]]] = None,
    ) -> List[str]:
        """
        Start each phase, detached.

        Args:
            phases: Phases to start (re-sorted into fixed precedence)
            instance_name: Compose project name
            compose_file: Merged compose file
            executor_delay: Seconds to wait before the executors phase
            phase_services: profile -> service names, for progress output

        Returns:
            The phases started, in order

        Raises:
            ExternalToolError: If any `compose up` fails (remaining phases skipped)
        """
        ordered = [p for p in PHASE_ORDER if p in set(phases)]
        phase_services = phase_services or {}
        started = []

        for profile in ordered:
            services = phase_services.get(profile, [])
            symbol = PHASE_SYMBOLS.get(profile, "🧰")
            print_info(f"{symbol} Starting {profile} ({len(services)}): {', '.join(services)}")

            if profile == Profile.EXECUTORS.value and executor_delay > 0:
                print_info(f"Delaying {executor_delay:g}s before starting executors...")
                self.sleep(executor_delay)

            logger.info(
                f"Starting profile {profile} of {instance_name}",
                extra={"event": "phase_started", "instance": instance_name,
                       "metadata": {"profile": profile, "services": services}},
            )
            self.docker.up(instance_name, compose_file, profile)
            started.append(profile)

        return started
