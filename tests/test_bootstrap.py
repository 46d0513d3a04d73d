"""Tests for bootstrap option resolution."""
from metal_vsphere.bootstrap import DEFAULT_KEY_NAME, BootstrapIdentity, resolve_bootstrap_options
from metal_vsphere.schemas import BootstrapOptions, MachineOptions, MachineSpec

IDENTITY = BootstrapIdentity(host="build-host", user="ci")


def test_defaults_are_filled_in():
    """Test key name, tags and VM name defaults."""
    spec = MachineSpec(name="web1", id="abc123")
    bootstrap = resolve_bootstrap_options(spec, MachineOptions(), IDENTITY)

    assert bootstrap.key_name == DEFAULT_KEY_NAME
    assert bootstrap.name == "web1"
    assert bootstrap.tags == {
        "Name": "web1",
        "BootstrapId": "abc123",
        "BootstrapHost": "build-host",
        "BootstrapUser": "ci",
    }


def test_missing_bootstrap_id_is_empty_tag():
    bootstrap = resolve_bootstrap_options(MachineSpec(name="web1"), MachineOptions(), IDENTITY)
    assert bootstrap.tags["BootstrapId"] == ""


def test_caller_values_win():
    """Test explicit key name, VM name and tags override the defaults."""
    options = MachineOptions(bootstrap_options=BootstrapOptions(
        name="web1.example.com",
        key_name="deploy",
        tags={"Name": "frontend", "team": "ops"},
    ))

    bootstrap = resolve_bootstrap_options(MachineSpec(name="web1"), options, IDENTITY)

    assert bootstrap.name == "web1.example.com"
    assert bootstrap.key_name == "deploy"
    assert bootstrap.tags["Name"] == "frontend"
    assert bootstrap.tags["team"] == "ops"
    assert bootstrap.tags["BootstrapUser"] == "ci"


def test_resolution_does_not_mutate_options():
    """Test resolved options are a copy; nothing leaks back into MachineOptions."""
    options = MachineOptions(bootstrap_options=BootstrapOptions(tags={"team": "ops"}))

    resolve_bootstrap_options(MachineSpec(name="web1"), options, IDENTITY)

    assert options.bootstrap_options.key_name is None
    assert options.bootstrap_options.name is None
    assert options.bootstrap_options.tags == {"team": "ops"}


def test_local_identity(monkeypatch):
    monkeypatch.setattr("metal_vsphere.bootstrap.socket.gethostname", lambda: "laptop")
    monkeypatch.setattr("metal_vsphere.bootstrap.getpass.getuser", lambda: "alice")

    assert BootstrapIdentity.local() == BootstrapIdentity(host="laptop", user="alice")


def test_local_identity_without_user(monkeypatch):
    def getuser():
        raise KeyError("uid not found")

    monkeypatch.setattr("metal_vsphere.bootstrap.getpass.getuser", getuser)

    assert BootstrapIdentity.local().user == "unknown"
