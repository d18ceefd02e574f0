# backend/tests/unit/test_engine.py
import pytest

from iqflow.models.flow import Actor, FlowDefinition, FlowStep, Widget
from iqflow.workflows.definitions import FLOWS
from iqflow.workflows.engine import FlowDriver, resolve_data, resolve_template
from iqflow.workflows.errors import FlowConfigurationError


def _flow(*steps, name="test", entry=None):
    return FlowDefinition(name=name, entry_step=entry or steps[0].id, steps=list(steps))


def _driver(*steps):
    flow = _flow(*steps)
    return FlowDriver({flow.name: flow}, flow.name)


# --- Idle behaviour ---

def test_new_driver_is_idle():
    driver = FlowDriver(FLOWS, "non-login")
    assert driver.is_idle
    assert driver.get_current_step() is None
    assert driver.get_context() == {}


def test_advance_while_idle_is_noop():
    driver = FlowDriver(FLOWS, "non-login")
    driver.update_context({"email": "ada@factory.io"})

    assert driver.advance() is None
    assert driver.is_idle
    assert driver.get_context() == {"email": "ada@factory.io"}


def test_empty_update_while_idle_changes_nothing():
    driver = FlowDriver(FLOWS)
    driver.update_context({})
    driver.update_context(None)
    assert driver.is_idle
    assert driver.get_context() == {}


# --- Context ---

def test_update_context_is_additive_and_overwrites():
    driver = FlowDriver(FLOWS, "non-login")
    driver.update_context({"email": "a@b.com", "mode": "demo"})
    driver.update_context({"mode": "live", "deviceId": "dev_1"})

    assert driver.get_context() == {"email": "a@b.com", "mode": "live", "deviceId": "dev_1"}


def test_get_context_returns_a_copy():
    driver = FlowDriver(FLOWS, "non-login")
    driver.update_context({"mqttConnection": {"topic": "t"}})
    snapshot = driver.get_context()
    snapshot["mqttConnection"]["topic"] = "changed"
    snapshot["extra"] = 1

    assert driver.get_context() == {"mqttConnection": {"topic": "t"}}


def test_update_does_not_alias_caller_data():
    driver = FlowDriver(FLOWS, "non-login")
    users = [{"email": "a@b.com"}]
    driver.update_context({"invitedUsers": users})
    users.append({"email": "c@d.com"})
    assert len(driver.get_context()["invitedUsers"]) == 1


# --- Transitions ---

def test_advance_follows_literal_transitions_to_terminal():
    driver = _driver(
        FlowStep(id="a", next_step="b"),
        FlowStep(id="b", next_step="c"),
        FlowStep(id="c"),
    )
    driver.jump_to_step("a")

    assert driver.advance().id == "b"
    assert driver.advance().id == "c"
    assert driver.advance() is None
    assert driver.current_step_id == "c"


def test_branch_transition_reads_context():
    driver = _driver(
        FlowStep(id="choose", next_step=lambda ctx: "demo" if ctx.get("mode") == "demo" else "live"),
        FlowStep(id="demo"),
        FlowStep(id="live"),
    )
    driver.jump_to_step("choose")
    driver.update_context({"mode": "demo"})
    assert driver.advance().id == "demo"


def test_branch_to_current_step_stays_put():
    driver = _driver(FlowStep(id="ask", next_step=lambda ctx: "ask"))
    driver.jump_to_step("ask")

    assert driver.advance() is None
    assert driver.current_step_id == "ask"
    assert driver.next_step_id() == "ask"


def test_branch_to_unknown_step_is_a_configuration_error():
    driver = _driver(FlowStep(id="a", next_step=lambda ctx: "nowhere"))
    driver.jump_to_step("a")
    with pytest.raises(FlowConfigurationError):
        driver.advance()


def test_jump_to_unknown_step_fails_loudly():
    driver = FlowDriver(FLOWS, "non-login")
    with pytest.raises(FlowConfigurationError):
        driver.jump_to_step("does-not-exist")
    assert driver.is_idle


def test_jump_keeps_context():
    driver = FlowDriver(FLOWS, "non-login")
    driver.update_context({"email": "a@b.com"})
    driver.jump_to_step("otp-prompt")
    assert driver.current_step_id == "otp-prompt"
    assert driver.get_context() == {"email": "a@b.com"}


def test_literal_transition_to_unknown_step_rejected_at_construction():
    flow = _flow(FlowStep(id="a", next_step="missing"))
    with pytest.raises(FlowConfigurationError):
        FlowDriver({flow.name: flow})


def test_unknown_flow_selection_rejected():
    with pytest.raises(FlowConfigurationError):
        FlowDriver(FLOWS, "no-such-flow")


def test_finish_keeps_context_and_reset_clears_it():
    driver = FlowDriver(FLOWS, "non-login")
    driver.jump_to_step("mode-selection")
    driver.update_context({"profileKey": "p"})

    driver.finish()
    assert driver.is_idle
    assert driver.get_context() == {"profileKey": "p"}

    driver.reset()
    assert driver.get_context() == {}


# --- Rendering ---

def test_render_message_resolves_placeholders():
    driver = FlowDriver(FLOWS, "non-login")
    driver.update_context({"profileKey": "profile_abc"})
    step = driver.jump_to_step("mode-selection")
    assert "profile_abc" in driver.render_message(step)


def test_render_message_missing_key_renders_empty():
    driver = FlowDriver(FLOWS, "non-login")
    step = driver.jump_to_step("mode-selection")
    message = driver.render_message(step)
    assert "{{" not in message
    assert "profile key:  to activate" in message


def test_resolve_template_defaults_and_dotted_paths():
    context = {"profileConfig": {"profileName": "Press 4"}}
    assert resolve_template("{{ profileConfig.profileName }}", context) == "Press 4"
    assert resolve_template("{{profileConfig.missing|n/a}}", context) == "n/a"
    assert resolve_template("{{absent}}!", context) == "!"


def test_callable_message_errors_render_empty():
    def broken(ctx):
        return ctx["missing"]

    driver = _driver(FlowStep(id="a", message=broken))
    step = driver.jump_to_step("a")
    assert driver.render_message(step) == ""


def test_resolve_data_keeps_raw_values_for_whole_placeholders():
    data = {"port": "{{conn.brokerPort}}", "label": "Port {{conn.brokerPort}}", "nested": ["{{id}}"]}
    resolved = resolve_data(data, {"conn": {"brokerPort": 8883}, "id": "dev_1"})
    assert resolved == {"port": 8883, "label": "Port 8883", "nested": ["dev_1"]}


def test_render_widget_stacks_help_widgets():
    driver = FlowDriver(FLOWS, "non-login")
    step = driver.jump_to_step("live-machine-details-prompt")
    widget = driver.render_widget(step)

    assert widget.type == "widget-stack"
    types = [w["type"] for w in widget.data["widgets"]]
    assert types == ["machine-details-form", "right-panel-button"]


def test_render_widget_single_help_widget_is_not_stacked():
    driver = FlowDriver(FLOWS, "non-login")
    step = driver.jump_to_step("live-mqtt-prompt")
    widget = driver.render_widget(step)
    assert widget.type == "right-panel-button"
    assert widget.data["panelType"] == "mqtt-setup"


def test_render_widget_uses_override_only_without_own_widget():
    driver = _driver(
        FlowStep(id="plain", next_step="formed"),
        FlowStep(id="formed", widget=Widget(type="otp-form")),
    )
    override = Widget(type="restart-onboarding-widget", data={"message": "{{who|you}}"})

    plain = driver.jump_to_step("plain")
    assert driver.render_widget(plain, override).data == {"message": "you"}

    formed = driver.jump_to_step("formed")
    assert driver.render_widget(formed, override).type == "otp-form"


def test_user_steps_carry_no_widget():
    driver = _driver(FlowStep(id="u", actor=Actor.USER, message="hi", widget=Widget(type="x")))
    step = driver.jump_to_step("u")
    assert driver.render_widget(step) is None


def test_device_widget_resolves_device_id():
    driver = FlowDriver(FLOWS, "non-login")
    driver.update_context({"deviceId": "dev_123"})
    step = driver.jump_to_step("demo-device-spawn")
    widget = driver.render_widget(step)
    assert widget.type == "device-status-widget"
    assert widget.data["deviceId"] == "dev_123"
