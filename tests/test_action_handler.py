"""Tests for progress reporting and why-run handling."""
import io
import logging

import pytest

from metal_vsphere.action_handler import ActionHandler


def test_perform_action_runs_and_records():
    handler = ActionHandler(interactive=False)

    result = handler.perform_action("power on VM [MyApp/web1]", lambda: 42)

    assert result == 42
    assert handler.performed == ["power on VM [MyApp/web1]"]
    assert handler.updated


def test_perform_action_why_run(caplog):
    """Test why-run only logs what would have happened."""
    handler = ActionHandler(should_perform_actions=False, interactive=False)
    calls = []

    with caplog.at_level(logging.INFO):
        result = handler.perform_action("delete VM [MyApp/web1]", lambda: calls.append(1))

    assert result is None
    assert calls == []
    assert not handler.updated
    assert "Would delete VM [MyApp/web1]" in caplog.text


def test_failed_action_is_not_recorded():
    handler = ActionHandler(interactive=False)

    def fail():
        raise RuntimeError("task failed")

    with pytest.raises(RuntimeError):
        handler.perform_action("destroy", fail)
    assert handler.performed == []


def test_report_progress_accepts_lines(caplog):
    handler = ActionHandler(interactive=False)
    with caplog.at_level(logging.INFO):
        handler.report_progress(["creating machine web1", "  template_name: 'centos'"])
    assert "creating machine web1" in caplog.text
    assert "template_name" in caplog.text


def test_ticks_only_when_interactive():
    quiet, loud = io.StringIO(), io.StringIO()

    ActionHandler(interactive=False, stream=quiet).report_tick()
    ActionHandler(interactive=True, stream=loud).report_tick()

    assert quiet.getvalue() == ""
    assert loud.getvalue() == "."


def test_interactive_defaults_to_tty():
    assert ActionHandler(stream=io.StringIO()).interactive is False
