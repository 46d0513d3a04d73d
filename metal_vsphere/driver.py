"""vSphere machine lifecycle driver.

VsphereDriver takes a machine from "not yet existing" through created,
powered on, guest ready and reachable, to destroyed. Every operation
re-locates the VM by the server_id stored in MachineSpec.location instead
of trusting a handle from an earlier call, so any operation can be called
again after a partial failure without creating a second VM.

The only record mutation is MachineSpec.location:

- allocate_machine sets it after a successful clone,
- restart (inside ready_machine) sets location.started_at,
- destroy_machine clears it once the VM is gone.

Callers persist the spec (for example with MachineStore) after each call,
and must serialize calls for the same machine.
"""
from __future__ import annotations

import threading
from typing import Any, Dict, Mapping, Optional

from . import __version__, logging_config
from .action_handler import ActionHandler
from .bootstrap import BootstrapIdentity, resolve_bootstrap_options
from .config import (
    ConnectOptions,
    canonicalize_url,
    is_dry_run,
    is_local_mode,
    machine_options_for,
)
from .convergence import ConvergenceStrategy
from .exceptions import (
    InvalidServerURLError,
    MachineNotFoundError,
    NameConflictError,
    PlatformError,
    PreconditionError,
    ReadinessTimeout,
    TemplateNotFoundError,
)
from .machine import Machine
from .machine_store import MachineStore
from .observer import LocalObserver
from .platform import GuestFamily, PlatformClient, PowerState, VirtualMachine, connect
from .schemas import BootstrapOptions, MachineLocation, MachineOptions, MachineSpec
from . import strategies
from .transport import Transport
from .waiting import POLL_INTERVAL, Clock, Poller, WaitOutcome, remaining_wait_time

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_DRIVER)

# A machine whose transport never came up is rebooted once, unless its wait
# budget ran out more than this many seconds ago.
REBOOT_GRACE_PERIOD = 10 * 60

PASSTHROUGH_LOCATION_KEYS = ("ssh_username", "sudo", "use_private_ip_for_ssh", "ssh_gateway")


class VsphereDriver:
    """Provisions machines on one vSphere endpoint."""

    def __init__(self, driver_url: str, config: Mapping[str, Any],
                 platform: Optional[PlatformClient] = None,
                 clock: Optional[Clock] = None,
                 identity: Optional[BootstrapIdentity] = None,
                 poll_interval: float = POLL_INTERVAL):
        """
        Args:
            driver_url: canonical vsphere:// URL (see config.canonicalize_url).
            config: merged driver configuration. driver_options.connect_options
                must hold host, user and password.
            platform: platform client; connected from the connect options when
                omitted.
            clock: time source for budgets and polling.
            identity: host/user recorded in the bootstrap tags. Defaults to
                the local host and invoking user.
            poll_interval: seconds between readiness probes.
        """
        self.driver_url = driver_url
        self.config: Dict[str, Any] = dict(config)
        self.connect_options = ConnectOptions(**self.config["driver_options"]["connect_options"])
        self.platform = platform or connect(self.connect_options, dry_run=is_dry_run())
        self.clock = clock or Clock()
        self.identity = identity or BootstrapIdentity.local()
        self.poll_interval = poll_interval
        self._cancel_event = threading.Event()
        logger.debug("VsphereDriver init: url=%s platform=%s", driver_url, type(self.platform).__name__)

    @classmethod
    def from_url(cls, driver_url: Optional[str], config: Optional[Mapping[str, Any]] = None, **kwargs) -> "VsphereDriver":
        url, merged = canonicalize_url(driver_url, config)
        return cls(url, merged, **kwargs)

    @property
    def local_mode(self) -> bool:
        return bool(self.config.get("local_mode")) or is_local_mode()

    def machine_options(self, overrides: Optional[Mapping[str, Any]] = None) -> MachineOptions:
        """MachineOptions from the driver defaults plus per-machine overrides."""
        return machine_options_for(self.config, overrides)

    def _describe(self, spec: MachineSpec, vm: Optional[VirtualMachine] = None) -> str:
        server_id = vm.instance_uuid if vm else (spec.location.server_id if spec.location else None)
        return f"{spec.name} ({server_id} on {self.driver_url})"

    # -- locating -------------------------------------------------------

    def vm_for(self, spec: MachineSpec) -> Optional[VirtualMachine]:
        """The live VM recorded in spec.location, or None."""
        if spec.location is None:
            return None
        return self.platform.find_by_instance_id(spec.location.server_id)

    def bootstrap_options_for(self, spec: MachineSpec, options: MachineOptions) -> BootstrapOptions:
        return resolve_bootstrap_options(spec, options, self.identity)

    # -- lifecycle ------------------------------------------------------

    def allocate_machine(self, action_handler: ActionHandler, spec: MachineSpec,
                         options: MachineOptions) -> Optional[VirtualMachine]:
        """Create the VM unless the record already points at a live one.

        Returns None in why-run mode when a VM would have been created.
        """
        if spec.location is not None:
            vm = self.vm_for(spec)
            if vm is not None:
                return vm
            logger.warning("Machine %s no longer exists.  Recreating ...", self._describe(spec))

        bootstrap = self.bootstrap_options_for(spec, options)
        if bootstrap.ssh is None:
            raise PreconditionError(
                f"bootstrapping is currently supported for ssh only (machine {spec.name} on {self.driver_url})"
            )
        if bootstrap.ssh.port is None:
            raise PreconditionError(
                f"Must specify bootstrap_options.ssh.port (machine {spec.name} on {self.driver_url})"
            )

        description = [f"creating machine {spec.name} on {self.driver_url}"]
        for key, value in bootstrap.model_dump(exclude_none=True).items():
            description.append(f"  {key}: {value!r}")
        action_handler.report_progress(description)

        if not action_handler.should_perform_actions:
            action_handler.report_progress(f"Would create machine {spec.name}")
            return None

        vm = self.clone_vm(spec, bootstrap, options)
        guest = self.platform.guest_probe(vm)

        passthrough = {key: getattr(options, key) for key in PASSTHROUGH_LOCATION_KEYS if getattr(options, key)}
        spec.location = MachineLocation(
            driver_url=self.driver_url,
            driver_version=__version__,
            server_id=vm.instance_uuid,
            is_windows=guest.family is GuestFamily.WINDOWS,
            allocated_at=self.clock.now(),
            key_name=bootstrap.key_name,
            **passthrough,
        )

        action_handler.performed_action(
            f"machine {spec.name} created as {vm.instance_uuid} on {self.driver_url}"
        )
        logging_config.UnifiedLogger.log_machine_event(logger, spec.name, "allocated", vm.instance_uuid)
        return vm

    def clone_vm(self, spec: MachineSpec, bootstrap: BootstrapOptions, options: MachineOptions) -> VirtualMachine:
        existing = self.platform.find_by_path(bootstrap.datacenter, bootstrap.vm_folder, bootstrap.name)
        if existing is not None:
            if options.name_conflict == "error":
                raise NameConflictError(
                    f"VM [{existing.path}] already exists on {self.driver_url} "
                    f"but is not linked to machine {spec.name}"
                )
            logger.warning("Reusing existing VM [%s] (%s) for machine %s",
                           existing.path, existing.instance_uuid, spec.name)
            return existing

        if not bootstrap.template_name:
            raise PreconditionError(f"Must specify bootstrap_options.template_name for machine {spec.name}")
        template = self.platform.find_by_path(bootstrap.datacenter, bootstrap.template_folder, bootstrap.template_name)
        if template is None:
            raise TemplateNotFoundError(
                f"vSphere VM Template not found [{bootstrap.template_folder}/{bootstrap.template_name}] "
                f"on {self.driver_url}"
            )
        return self.platform.clone(template, bootstrap.name, bootstrap.placement())

    def ready_machine(self, action_handler: ActionHandler, spec: MachineSpec, options: MachineOptions) -> Machine:
        """Power on, wait for the guest and its transport, and return a handle.

        If the transport does not come up in time the machine is rebooted
        once; a second timeout raises ReadinessTimeout.
        """
        self._cancel_event.clear()
        self.start_machine(action_handler, spec, options)
        vm = self.vm_for(spec)
        if vm is None:
            raise MachineNotFoundError(
                f"Machine {spec.name} does not have a server associated with it, or server does not exist."
            )

        outcome, transport = self._wait_for_readiness(action_handler, spec, options, vm)
        if outcome.is_timed_out and self._may_reboot(spec, options):
            logger.warning("Machine %s was started but SSH did not come up.  "
                           "Rebooting machine in an attempt to unstick it ...", self._describe(spec, vm))
            self.restart_machine(action_handler, spec, options, vm)
            outcome, transport = self._wait_for_readiness(action_handler, spec, options, vm)

        if outcome.is_timed_out:
            raise ReadinessTimeout(
                f"Machine {self._describe(spec, vm)} did not become connectable in time"
            )
        if not outcome.is_ready:
            raise outcome.error
        return self.machine_for(spec, options, vm, transport)

    def _may_reboot(self, spec: MachineSpec, options: MachineOptions) -> bool:
        if spec.location.started_at is not None:
            return False
        return remaining_wait_time(spec, options, self.clock.now()) >= -REBOOT_GRACE_PERIOD

    def connect_to_machine(self, action_handler: Optional[ActionHandler], spec: MachineSpec,
                           options: MachineOptions) -> Machine:
        """Handle for an already-ready machine; no allocation, no waiting."""
        return self.machine_for(spec, options)

    def stop_machine(self, action_handler: ActionHandler, spec: MachineSpec, options: MachineOptions) -> None:
        self._cancel_event.clear()
        vm = self.vm_for(spec)
        if vm is None:
            return
        action_handler.perform_action(
            f"Shutdown guest OS and power off VM [{vm.path}]",
            lambda: self._stop_vm(spec, vm, options),
        )

    def start_machine(self, action_handler: ActionHandler, spec: MachineSpec, options: MachineOptions) -> None:
        vm = self.vm_for(spec)
        if vm is None:
            return
        if self.platform.power_state(vm) is PowerState.POWERED_ON:
            return
        bootstrap = self.bootstrap_options_for(spec, options)
        port = bootstrap.ssh.port if bootstrap.ssh else None
        action_handler.perform_action(
            f"Power on VM [{vm.path}]",
            lambda: self._start_vm(spec, vm, port),
        )

    def restart_machine(self, action_handler: ActionHandler, spec: MachineSpec,
                        options: MachineOptions, vm: VirtualMachine) -> None:
        """Stop then start, and rebase the wait budget on start_timeout."""
        def restart():
            self._stop_vm(spec, vm, options)
            self._start_vm(spec, vm)
            spec.location.started_at = self.clock.now()

        action_handler.perform_action(f"restart machine {self._describe(spec, vm)}", restart)

    def destroy_machine(self, action_handler: ActionHandler, spec: MachineSpec, options: MachineOptions) -> None:
        vm = self.vm_for(spec)
        if vm is not None:
            def destroy():
                try:
                    if self.platform.power_state(vm) is not PowerState.POWERED_OFF:
                        self.platform.power_off(vm, graceful=False)
                    self.platform.destroy(vm)
                except PlatformError as e:
                    logging_config.UnifiedLogger.log_error(
                        logger, "destroy", e, {"machine": spec.name, "server_id": vm.instance_uuid,
                                               "driver_url": self.driver_url})
                    raise
                spec.location = None
                logging_config.UnifiedLogger.log_machine_event(logger, spec.name, "destroyed", vm.instance_uuid)

            action_handler.perform_action(f"Delete VM [{vm.path}]", destroy)
        elif spec.location is not None:
            logger.warning("Machine %s no longer exists; forgetting it", self._describe(spec))

            def forget():
                spec.location = None

            action_handler.perform_action(f"forget machine {spec.name}", forget)

        strategy = self.convergence_strategy_for(spec, options)
        try:
            strategy.cleanup(action_handler, spec)
        except InvalidServerURLError as e:
            if not self.local_mode:
                raise
            logger.warning("Skipping convergence cleanup for %s in local mode: %s", spec.name, e)

    # -- power helpers --------------------------------------------------

    def _start_vm(self, spec: MachineSpec, vm: VirtualMachine, port: Optional[int] = None) -> None:
        if self.platform.power_state(vm) is not PowerState.POWERED_ON:
            self.platform.power_on(vm)
            logging_config.UnifiedLogger.log_machine_event(
                logger, spec.name, "powered on", f"{vm.instance_uuid} (ssh port {port})" if port else vm.instance_uuid)

    def _stop_vm(self, spec: MachineSpec, vm: VirtualMachine, options: MachineOptions) -> None:
        """Orderly guest shutdown, falling back to a hard power-off."""
        if self.platform.power_state(vm) is PowerState.POWERED_OFF:
            return
        try:
            self.platform.power_off(vm, graceful=True)
        except PlatformError as e:
            logger.warning("Guest shutdown of %s failed (%s); powering off", self._describe(spec, vm), e)
            self.platform.power_off(vm, graceful=False)
            return

        started = self.clock.now()
        outcome = self._new_poller().poll(
            lambda: self.platform.power_state(vm) is PowerState.POWERED_OFF,
            lambda now: options.stop_timeout - (now - started).total_seconds(),
        )
        if outcome.is_timed_out:
            logger.warning("Guest of %s did not shut down within %ss; powering off",
                           self._describe(spec, vm), options.stop_timeout)
            self.platform.power_off(vm, graceful=False)
        elif not outcome.is_ready:
            raise outcome.error
        logging_config.UnifiedLogger.log_machine_event(logger, spec.name, "powered off", vm.instance_uuid)

    # -- waiting --------------------------------------------------------

    def _new_poller(self) -> Poller:
        return Poller(self.clock, self.poll_interval, self._cancel_event)

    def cancel(self) -> None:
        """Cancel the current lifecycle operation's waits.

        Takes effect in the running wait and in every later wait of the same
        ready_machine or stop_machine call; the next such call starts clean.
        """
        self._cancel_event.set()

    def _budget(self, spec: MachineSpec, options: MachineOptions):
        return lambda now: remaining_wait_time(spec, options, now)

    def _wait_for_readiness(self, action_handler, spec, options, vm):
        outcome = self.wait_until_ready(action_handler, spec, options, vm)
        if not outcome.is_ready:
            return outcome, None
        return self.wait_for_transport(action_handler, spec, options, vm)

    def wait_until_ready(self, action_handler: ActionHandler, spec: MachineSpec,
                         options: MachineOptions, vm: VirtualMachine) -> WaitOutcome:
        """Wait for guest tools to run and the guest to report an IP address."""
        def probe():
            return self.platform.guest_probe(vm).is_ready

        if probe() or not action_handler.should_perform_actions:
            return WaitOutcome.ready()

        action_handler.report_progress(f"waiting for {self._describe(spec, vm)} to be ready ...")
        outcome = self._new_poller().poll(probe, self._budget(spec, options),
                                          lambda left: action_handler.report_tick())
        if outcome.is_ready:
            action_handler.report_progress(f"{spec.name} is now ready")
        return outcome

    def wait_for_transport(self, action_handler: ActionHandler, spec: MachineSpec,
                           options: MachineOptions, vm: VirtualMachine):
        """Wait until the transport accepts commands.

        Returns ``(outcome, transport)``.
        """
        transport = self.transport_for(spec, options, vm)
        if transport.available() or not action_handler.should_perform_actions:
            return WaitOutcome.ready(), transport

        action_handler.report_progress(
            f"waiting for {self._describe(spec, vm)} to be connectable (transport up and running) ..."
        )
        outcome = self._new_poller().poll(transport.available, self._budget(spec, options),
                                          lambda left: action_handler.report_tick())
        if outcome.is_ready:
            action_handler.report_progress(f"{spec.name} is now connectable")
        return outcome, transport

    # -- strategies -----------------------------------------------------

    def transport_for(self, spec: MachineSpec, options: MachineOptions, vm: VirtualMachine) -> Transport:
        guest = self.platform.guest_probe(vm)
        return strategies.transport_for(spec, options, guest, self.identity, self.config)

    def convergence_strategy_for(self, spec: MachineSpec, options: MachineOptions) -> ConvergenceStrategy:
        return strategies.convergence_strategy_for(spec, options, self.config)

    def machine_for(self, spec: MachineSpec, options: MachineOptions,
                    vm: Optional[VirtualMachine] = None, transport: Optional[Transport] = None) -> Machine:
        vm = vm or self.vm_for(spec)
        if vm is None:
            raise MachineNotFoundError(f"Server for node {spec.name} has not been created!")
        transport = transport or self.transport_for(spec, options, vm)
        return strategies.machine_for(spec, transport, self.convergence_strategy_for(spec, options))

    def observer(self, store: MachineStore, check_interval: float = 60.0) -> LocalObserver:
        """Coherence observer for the records this driver manages in `store`.

        Call start() on it to run the checks in a background thread.
        """
        return LocalObserver(store, self.platform, self.driver_url, check_interval)

    def close(self) -> None:
        self.platform.close()
