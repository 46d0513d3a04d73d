"""Shared fixtures for driver tests.

Nothing here talks to a real vCenter or opens SSH connections: the platform
is InMemoryPlatformClient, time comes from FakeClock, and SSH transports are
replaced by FakeTransport through the strategy module.
"""
import os

os.environ.setdefault("METAL_VSPHERE_LOG_TO_FILE", "0")

from datetime import datetime, timedelta, timezone
from typing import Callable, List

import pytest
from sqlalchemy.orm import sessionmaker

from metal_vsphere import db, strategies
from metal_vsphere.action_handler import ActionHandler
from metal_vsphere.bootstrap import BootstrapIdentity
from metal_vsphere.driver import VsphereDriver
from metal_vsphere.machine_store import MachineStore
from metal_vsphere.platform import WINDOWS_GUEST_FAMILY, InMemoryPlatformClient
from metal_vsphere.schemas import MachineSpec
from metal_vsphere.transport import CommandResult, Transport
from metal_vsphere.waiting import Clock

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

DRIVER_URL = "vsphere://vcenter.example.com"
DRIVER_CONFIG = {
    "driver_options": {"connect_options": {"user": "admin", "password": "secret"}},
}
BOOTSTRAP = {
    "datacenter": "dc1",
    "template_folder": "Templates",
    "template_name": "centos6.small",
    "vm_folder": "MyApp",
}


class FakeClock(Clock):
    """Clock that only moves when slept on or advanced."""

    def __init__(self, start: datetime = T0):
        self.start = start
        self.current = start
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self.current

    def sleep(self, seconds: float, cancel_event=None) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    @property
    def elapsed(self) -> float:
        return (self.current - self.start).total_seconds()


class FakeTransport(Transport):
    def __init__(self, control, host, username, ssh_options, options=None, config=None):
        self.control = control
        self.host = host
        self.username = username
        self.ssh_options = dict(ssh_options)
        self.options = dict(options or {})
        self.commands: List[str] = []
        self.files = {}
        self.uploads = []
        self.disconnected = False

    def available(self) -> bool:
        self.control.probes += 1
        return self.control.is_available()

    def execute(self, command: str) -> CommandResult:
        self.commands.append(command)
        return self.control.results.get(command, CommandResult(command, 0))

    def write_file(self, path: str, content: str) -> None:
        self.files[path] = content

    def upload_file(self, local_path: str, path: str) -> None:
        self.uploads.append((local_path, path))

    def disconnect(self) -> None:
        self.disconnected = True


class TransportControl:
    """Decides what every FakeTransport reports."""

    def __init__(self):
        self.is_available: Callable[[], bool] = lambda: True
        self.created: List[FakeTransport] = []
        self.results = {}
        self.probes = 0

    def factory(self, host, username, ssh_options, options=None, config=None):
        transport = FakeTransport(self, host, username, ssh_options, options, config)
        self.created.append(transport)
        return transport


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def platform():
    client = InMemoryPlatformClient()
    client.add_template("dc1", "Templates", "centos6.small")
    client.add_template("dc1", "Templates", "win2012", guest_family=WINDOWS_GUEST_FAMILY)
    return client


@pytest.fixture
def transports(monkeypatch):
    control = TransportControl()
    monkeypatch.setattr(strategies, "SSHTransport", control.factory)
    return control


@pytest.fixture
def driver(platform, clock, transports):
    return VsphereDriver.from_url(
        DRIVER_URL,
        DRIVER_CONFIG,
        platform=platform,
        clock=clock,
        identity=BootstrapIdentity(host="build-host", user="ci"),
    )


@pytest.fixture
def options(driver):
    return driver.machine_options({"bootstrap_options": BOOTSTRAP})


@pytest.fixture
def action_handler():
    return ActionHandler(interactive=False)


@pytest.fixture
def spec():
    return MachineSpec(name="web1", id="bootstrap-1")


@pytest.fixture
def store(tmp_path):
    engine = db.make_engine(f"sqlite:///{tmp_path / 'machines.db'}")
    db.init_db(engine)
    yield MachineStore(sessionmaker(autoflush=False, bind=engine))
    engine.dispose()
