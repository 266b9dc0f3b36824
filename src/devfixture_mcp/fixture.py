"""
Scoped device fixture.

DeviceFixture wraps one lifecycle run: it creates the session config and its
registry on entry and tears everything down on every exit path, including
SIGTERM while it is active on the main thread.

    with DeviceFixture(size="1G") as fx:
        fx.provision()
        run_tests(fx.config.mount_point)
"""

import logging
import signal
import threading
from pathlib import Path
from typing import Optional

from . import stages
from .fixture_config import DeviceConfig
from .registry import ResourceRegistry
from .teardown import TeardownReport, TeardownEngine

logger = logging.getLogger(__name__)


class DeviceFixture:
    """Context manager owning one DeviceConfig, its registry and its teardown."""

    def __init__(
        self,
        config: Optional[DeviceConfig] = None,
        *,
        device: Optional[str] = None,
        size: Optional[str] = None,
        backing_dir: Optional[Path] = None,
        registry_dir: Optional[Path] = None,
        unique_names: bool = False,
        use_env: bool = True,
        keep: bool = False,
        **overrides,
    ):
        """
        Args:
            config: Existing session config (a new one is created otherwise)
            device: Existing block device for provision()
            size: Size of a new loop device for provision() (e.g. "1G")
            backing_dir: Directory for the loop device's backing file
            registry_dir: Directory for the registry file
            unique_names: Suffix label/VG/LV/mount point with a per-run token
            use_env: Apply DEVFIXTURE_* environment overrides
            keep: Skip teardown on exit (leaves everything in place for debugging)
            **overrides: DeviceConfig field values
        """
        if config is None:
            factory = DeviceConfig.from_env if use_env else DeviceConfig.create
            config = factory(registry_dir=registry_dir, unique_names=unique_names, **overrides)

        self.config = config
        self.device = device
        self.size = size
        self.backing_dir = backing_dir
        self.keep = keep
        self.report: Optional[TeardownReport] = None
        self._previous_sigterm = None
        self._sigterm_installed = False

    @property
    def registry(self) -> ResourceRegistry:
        return self.config.registry

    def __enter__(self) -> "DeviceFixture":
        self.registry.create()
        self._install_sigterm_handler()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._restore_sigterm_handler()

        if self.keep:
            logger.warning(
                f"keep=True: leaving fixture resources in place (registry: {self.config.registry_path})"
            )
            return False

        if exc_type is None:
            self.teardown()
            return False

        # The body's exception wins; a teardown failure is only logged
        logger.error(f"Fixture body failed ({exc_type.__name__}), tearing down...")
        try:
            self.teardown()
        except Exception as e:
            logger.error(f"Teardown after failure did not complete: {e}", exc_info=True)
        return False

    def _install_sigterm_handler(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def _on_sigterm(signum, frame):
            logger.warning("Received SIGTERM, tearing down device fixture")
            raise SystemExit(128 + signum)

        self._previous_sigterm = signal.signal(signal.SIGTERM, _on_sigterm)
        self._sigterm_installed = True

    def _restore_sigterm_handler(self) -> None:
        if not self._sigterm_installed:
            return
        previous = self._previous_sigterm
        # None: the previous handler was not installed from Python
        signal.signal(signal.SIGTERM, signal.SIG_DFL if previous is None else previous)
        self._sigterm_installed = False

    # Stage operations

    def register_existing_device(self, path: str) -> None:
        stages.register_existing_device(self.config, self.registry, path)

    def create_loopback_device(self, size: str, backing_dir: Optional[Path] = None) -> str:
        return stages.create_loopback_device(
            self.config, self.registry, size, backing_dir or self.backing_dir
        )

    def setup_luks(self) -> str:
        return stages.setup_luks(self.config, self.registry)

    def setup_lvm(self) -> str:
        return stages.setup_lvm(self.config, self.registry)

    def format_filesystem(self) -> str:
        return stages.format_filesystem(self.config, self.registry)

    def provision(self) -> DeviceConfig:
        """Run the full pipeline: device -> LUKS -> LVM -> filesystem.

        Uses ``device`` when given, otherwise creates a loop device of ``size``.
        """
        if self.device:
            self.register_existing_device(self.device)
        elif self.size:
            self.create_loopback_device(self.size)
        else:
            raise ValueError("Either device or size must be given to provision()")

        self.setup_luks()
        self.setup_lvm()
        self.format_filesystem()
        logger.info(f"✓ Device fixture ready at {self.config.mount_point}")
        return self.config

    def teardown(self) -> TeardownReport:
        engine = TeardownEngine(
            self.registry,
            poll_interval=self.config.poll_interval,
            command_timeout=self.config.command_timeout,
        )
        self.report = engine.run()
        return self.report
