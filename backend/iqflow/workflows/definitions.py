# /iqflow/workflows/definitions.py

"""
Onboarding flow definitions.

This module defines the step graphs as pure data (no engine logic).
Each flow specifies:
- entry_step: where a freshly started flow begins
- resume_step: where a resumed flow re-enters when the snapshot names no step
- steps: the ordered step list

Each step defines:
- actor / message: who speaks and a "{{key|default}}" template (or a callable over the context)
- widget / help_widgets: interactive components attached to the rendered message
- action: identifier resolved by the action dispatcher
- wait_for_user_input: whether the advance loop halts after rendering it
- next_step: the next step id, a branch over the context, or None (terminal)
- reply_parser: maps free text typed at this step to context updates
"""

from typing import Any, Dict, List

from iqflow.models.flow import Actor, FlowDefinition, FlowStep, Widget
from iqflow.workflows import replies

MQTT_BROKER_ENDPOINT = "mqtt.industrialiq.ai"
MQTT_BROKER_PORT = 8883

# Help buttons that open the right-hand reference panel next to a step.
MACHINE_CONFIG_HELP = Widget(
    type="right-panel-button",
    data={
        "panelType": "machine-config-help",
        "title": "Machine Parameter Configuration",
        "buttonText": "View Parameter Configuration Info",
        "content": {},
    },
)
MQTT_SETUP_HELP = Widget(
    type="right-panel-button",
    data={
        "panelType": "mqtt-setup",
        "title": "MQTT Configuration",
        "buttonText": "View MQTT Configuration Info",
        "content": {"brokerEndpoint": MQTT_BROKER_ENDPOINT, "brokerPort": MQTT_BROKER_PORT, "topic": "telemetry"},
    },
)
CHANNEL_CONFIG_HELP = Widget(
    type="right-panel-button",
    data={
        "panelType": "channel-config-help",
        "title": "Channel Configuration",
        "buttonText": "View Channel Configuration Info",
        "content": {},
    },
)

DEVICE_STATUS_WIDGET = Widget(type="device-status-widget", data={"deviceId": "{{deviceId}}"})

ACCOUNT_QUESTION = """Would you like to create an account so you can continue interacting with this device and view your dashboards?
We'll use the information you provided earlier to set up your account and then send you a secure email to create your password.

Just say "yes" or "no"."""


def _otp_prompt(context: Dict[str, Any]) -> str:
    name = context.get("firstName")
    greeting = f"Welcome, {name}! " if name else ""
    email = context.get("email") or "your email"
    return (
        f"{greeting}We've sent a 6-digit verification code to {email}.\n"
        "Please check your inbox and enter the code below to verify your email and continue with the setup.\n\n"
        "Didn't get the code? You can resend it after a few seconds, or check your spam/junk folder."
    )


def _account_branch(stay_on: str):
    def branch(context: Dict[str, Any]):
        if context.get("createAccount") is True:
            return "account-created"
        if context.get("createAccount") is False:
            return "session-saved"
        return stay_on
    return branch


def _users_added(context: Dict[str, Any]) -> str:
    users = context.get("invitedUsers") or []
    if not users:
        return "Users have been added."
    names = ", ".join(user.get("name") or user.get("email", "") for user in users)
    return f"Great, the following users: {names} have been added. An email has been sent to their inbox to activate their account."


def _profile_summary(context: Dict[str, Any]) -> str:
    config = context.get("profileConfig")
    if not config:
        return "Profile configuration submitted"
    return (
        f"Profile name: {config.get('profileName', '')}\n"
        f"Training seconds: {config.get('trainingSeconds', '')}\n"
        f"Days to Maintenance: {config.get('daysToMaintenance', '')}\n"
        f"Cycle Duration: {config.get('cycleDuration', '')}"
    )


def _has_existing_profile(context: Dict[str, Any]) -> bool:
    return bool(context.get("profileKey") and (context.get("profileConfig") or {}).get("profileName"))


# ========== ANONYMOUS (NON-LOGIN) ONBOARDING ==========

NON_LOGIN_STEPS: List[FlowStep] = [
    FlowStep(
        id="user-info-prompt",
        message="You're about to set up a new machine, where you can explore its real-time telemetry and AI insights with interactive dashboards.",
        widget=Widget(type="user-info-form"),
        wait_for_user_input=True,
        reply_parser=replies.parse_email,
        next_step="user-info-processing",
    ),
    FlowStep(id="user-info-processing", action="register-user-info", next_step="otp-prompt"),
    FlowStep(
        id="otp-prompt",
        message=_otp_prompt,
        widget=Widget(type="otp-form", data={"allowResend": True}),
        wait_for_user_input=True,
        reply_parser=replies.parse_otp,
        next_step="otp-processing",
    ),
    FlowStep(id="otp-processing", action="validate-otp", next_step="mode-selection"),
    FlowStep(
        id="mode-selection",
        message="Here is your profile key: {{profileKey}} to activate the machine. How would you like to onboard the machine? Below are 2 options.",
        widget=Widget(type="device-option-form"),
        wait_for_user_input=True,
        reply_parser=replies.parse_mode,
        next_step=lambda ctx: "demo-device-init" if ctx.get("mode") == "demo" else "live-machine-details-prompt",
    ),

    # Demo device
    FlowStep(id="demo-device-init", action="spawn-demo-device", next_step="demo-device-spawn"),
    FlowStep(
        id="demo-device-spawn",
        message=(
            "Now we're setting up your Demo Machine.\n"
            "You'll start seeing real-time data very soon.\n\n"
            "I'll show you a live progress view of the setup, so you know exactly what's happening and how far along we are.\n"
            "Sit tight, this usually takes less than 1 minute."
        ),
        widget=DEVICE_STATUS_WIDGET,
        wait_for_user_input=True,
        next_step="demo-complete-message",
    ),
    FlowStep(
        id="demo-complete-message",
        message=(
            "Your Demo Machine is now fully configured and live!\n\n"
            "You can now explore real-time telemetry, AI insights, and interactive dashboards for your demo device.\n\n"
            + ACCOUNT_QUESTION
        ),
        wait_for_user_input=True,
        reply_parser=replies.yes_no("createAccount"),
        next_step=_account_branch("demo-complete-message"),
    ),

    # Live device
    FlowStep(
        id="live-machine-details-prompt",
        message=(
            "Now we'll start understanding your live machine so we can configure AI insights and predictive analytics.\n\n"
            "To get started, I need a few details about your device:"
        ),
        widget=Widget(type="machine-details-form"),
        help_widgets=[MACHINE_CONFIG_HELP],
        wait_for_user_input=True,
        next_step="live-mqtt-prompt",
    ),
    FlowStep(
        id="live-mqtt-prompt",
        message=(
            "Thanks for submitting your machine details!\n"
            "Now we need to connect your device to our system so we can receive and validate its data.\n\n"
            "We'll provide you with MQTT broker details. You can configure your machine, or use Kepware or Ignition, "
            "to send your device data to this broker.\n\n"
            f"Endpoint: {MQTT_BROKER_ENDPOINT}\nPort: {MQTT_BROKER_PORT}\nTopic: telemetry\n\n"
            "Don't worry about the format, you can send data in your existing format. We'll validate it on our side.\n\n"
            'When you have your device sending data, type "done" here and I\'ll validate it automatically.'
        ),
        help_widgets=[MQTT_SETUP_HELP],
        wait_for_user_input=True,
        reply_parser=replies.parse_data_ready,
        next_step=lambda ctx: "live-mqtt-schema-status" if ctx.get("dataSending") else "live-mqtt-prompt",
    ),
    FlowStep(
        id="live-mqtt-schema-status",
        message="Validating your data schema...",
        widget=Widget(
            type="device-status-widget",
            data={
                "deviceId": "schema_validation",
                "persist": False,
                "labels": {"starting": "Waiting for Data", "training": "Validating Schema", "complete": "Schema Validated"},
            },
        ),
        action="validate-schema",
        wait_for_user_input=True,
        next_step="live-agent-data-validate",
    ),
    FlowStep(
        id="live-agent-data-validate",
        message="Starting your agent and validating incoming data...",
        widget=Widget(
            type="device-status-widget",
            data={
                "deviceId": "agent_validation",
                "persist": False,
                "labels": {"starting": "Starting Container", "training": "Validating Data", "complete": "Data Validated"},
            },
        ),
        wait_for_user_input=True,
        next_step="live-data-received",
    ),
    FlowStep(
        id="live-data-received",
        message=(
            "We're receiving your device data successfully!\n"
            "We've identified the different tags/channels being sent, these are key-value pairs representing your sensor readings.\n\n"
            "Would you like to configure how your tags are grouped, or use the default configuration?"
        ),
        wait_for_user_input=True,
        reply_parser=replies.parse_channel_choice,
        next_step=lambda ctx: {True: "live-channel-config", False: "live-device-init"}.get(
            ctx.get("configureChannels"), "live-data-received"
        ),
    ),
    FlowStep(
        id="live-channel-config",
        message="Great! Let's configure your channels. You can organize your tags into groups below:",
        widget=Widget(type="channel-configuration-widget"),
        help_widgets=[CHANNEL_CONFIG_HELP],
        wait_for_user_input=True,
        next_step="live-device-init",
    ),
    FlowStep(id="live-device-init", action="spawn-live-device", next_step="live-device-spawn"),
    FlowStep(
        id="live-device-spawn",
        message="Training your machine model...",
        widget=DEVICE_STATUS_WIDGET,
        wait_for_user_input=True,
        next_step="live-complete-message",
    ),
    FlowStep(
        id="live-complete-message",
        message=(
            "Your Machine is now fully configured and live!\n\n"
            "You can now explore real-time telemetry, AI insights, and interactive dashboards for your machine.\n\n"
            + ACCOUNT_QUESTION
        ),
        wait_for_user_input=True,
        reply_parser=replies.yes_no("createAccount"),
        next_step=_account_branch("live-complete-message"),
    ),

    # Account
    FlowStep(
        id="account-created",
        message=(
            "Your account has been created! We've sent you an email with instructions to set your password. "
            "Once you log in, you'll have full access to your dashboard and all features."
        ),
        action="create-account",
        widget=Widget(
            type="login-button-widget",
            data={"url": "{{resetUrl|/reset}}", "buttonText": "Resend Email", "message": "Check your email to complete account setup."},
        ),
        next_step="login-handoff",
    ),
    FlowStep(id="login-handoff", action="auto-login"),
    FlowStep(
        id="session-saved",
        message=(
            "No problem! Your session has been saved. You can come back anytime using the same email address "
            "to continue where you left off. Your demo machine will remain active."
        ),
        action="skip-account",
    ),
]


# ========== POST-LOGIN (dashboard shown -> invite users -> notifications -> test ticket) ==========

POST_LOGIN_TAIL: List[FlowStep] = [
    FlowStep(
        id="dashboard-shown",
        message="Now that you have a dashboard displaying live data, would you like to add additional users to view it alongside you?",
        action="show-dashboard",
        wait_for_user_input=True,
        reply_parser=replies.yes_no("inviteUsers"),
        next_step=lambda ctx: "notification-prompt" if ctx.get("inviteUsers") is False else "user-invitation-prompt",
    ),
    FlowStep(
        id="user-invitation-prompt",
        message="Please provide email address(es), comma-separated, to invite users (e.g., user1@company.com, user2@company.com).",
        widget=Widget(type="user-invitation-form"),
        action="add-users",
        wait_for_user_input=True,
        reply_parser=replies.parse_invitees,
        next_step="users-added",
    ),
    FlowStep(id="users-added", message=_users_added, next_step="notification-prompt"),
    FlowStep(
        id="notification-prompt",
        message="Do you want to get email notifications when a ticket is auto generated/created?",
        widget=Widget(type="notification-preferences-form"),
        wait_for_user_input=True,
        reply_parser=replies.yes_no("notificationsEnabled"),
        next_step=lambda ctx: "test-ticket-prompt" if ctx.get("notificationsEnabled") is False else "notification-confirm",
    ),
    FlowStep(
        id="notification-confirm",
        message="I have set your email up to receive notifications when your machine has a new ticket.",
        action="subscribe-notifications",
        next_step="test-ticket-prompt",
    ),
    FlowStep(
        id="test-ticket-prompt",
        message="Would you like to create a test ticket to confirm that notifications are working as expected?",
        wait_for_user_input=True,
        reply_parser=replies.yes_no("wantsTestTicket"),
        next_step=lambda ctx: "completion" if ctx.get("wantsTestTicket") is False else "test-ticket-created",
    ),
    FlowStep(
        id="test-ticket-created",
        message="I have generated ticket number {{testTicketId}}. Please check your email as we have sent the ticket creation notification to you.",
        action="create-test-ticket",
        next_step="completion",
    ),
    FlowStep(
        id="completion",
        message=(
            "Your machine is fully setup, you may switch the channel graphs, add more machines, create tickets, "
            "manage users, and more through this chat interface."
        ),
        action="show-completion",
        next_step="nudges",
    ),
    FlowStep(
        id="nudges",
        message=(
            "You can ask:\n"
            "• Predict next maintenance date for the next 30 days.\n"
            "• Explain the top drivers of my health score today.\n"
            "• Compare line A vs line B vibration since Monday.\n"
            "• Switch dashboard graphs to a different sensor (e.g., Speed instead of Gyro).\n"
            "• Show vibration trend and temperature stability for the last 7 days."
        ),
        action="show-nudges",
    ),
]

POST_LOGIN_STEPS: List[FlowStep] = [
    FlowStep(
        id="session-transfer",
        message="Transferring your session to logged-in mode...",
        action="transfer-session",
        next_step="dashboard-shown",
    ),
    *POST_LOGIN_TAIL,
]


# ========== LOGGED-IN ONBOARDING (add another machine from the dashboard) ==========

LOGGED_IN_STEPS: List[FlowStep] = [
    FlowStep(
        id="user-question-logged-in",
        actor=Actor.USER,
        message="Add a machine to see its health score",
        next_step="profile-selection-prompt",
    ),
    FlowStep(
        id="profile-selection-prompt",
        message="Got it. Do you want to use an existing asset profile or create a new one?",
        widget=Widget(type="profile-selection-form"),
        action="show-profile-selection",
        wait_for_user_input=True,
        next_step=lambda ctx: "existing-profile-selected" if _has_existing_profile(ctx) else "new-profile-form",
    ),
    FlowStep(
        id="existing-profile-selected",
        actor=Actor.USER,
        message="Use existing profile: {{profileConfig.profileName|Selected Profile}}",
        next_step="existing-profile-confirmed",
    ),
    FlowStep(
        id="existing-profile-confirmed",
        message="Great, let's go with {{profileConfig.profileName|this profile}}.",
        next_step="logged-in-device-spawn",
    ),
    FlowStep(
        id="new-profile-form",
        message="Great! Let's create a new asset profile. Please fill out the form below as best you can!",
        widget=Widget(type="profile-config-form"),
        wait_for_user_input=True,
        next_step="new-profile-submitted",
    ),
    FlowStep(id="new-profile-submitted", actor=Actor.USER, message=_profile_summary, next_step="payment-prompt"),
    FlowStep(
        id="payment-prompt",
        message="Great now please select your payment plan and provide your payment details.",
        widget=Widget(type="payment-form"),
        action="show-payment-widget",
        wait_for_user_input=True,
        next_step="payment-submitted",
    ),
    FlowStep(id="payment-submitted", actor=Actor.USER, message="Payment information provided", next_step="payment-received"),
    FlowStep(
        id="payment-received",
        message="I received your payment information; I will now create your asset profile!",
        action="create-new-profile",
        next_step="profile-created",
    ),
    FlowStep(id="profile-created", message="I am spawning your MI Agent now.", next_step="logged-in-device-spawn"),
    FlowStep(
        id="logged-in-device-spawn",
        message="Spawning your machine intelligence agent...",
        widget=DEVICE_STATUS_WIDGET,
        action="spawn-live-device",
        next_step="logged-in-mqtt-details",
    ),
    FlowStep(
        id="logged-in-mqtt-details",
        message="Here are your connection details:",
        widget=Widget(
            type="mqtt-connection-info",
            data={
                "brokerEndpoint": "{{mqttConnection.brokerEndpoint}}",
                "brokerPort": "{{mqttConnection.brokerPort}}",
                "topic": "{{mqttConnection.topic}}",
                "username": "{{mqttConnection.username}}",
            },
        ),
        action="show-connection-details",
        next_step="logged-in-device-complete",
    ),
    FlowStep(
        id="logged-in-device-complete",
        message="Machine is activated successfully.",
        action="show-dashboard",
        next_step="dashboard-shown",
    ),
    *POST_LOGIN_TAIL,
]


NON_LOGIN_FLOW = FlowDefinition(
    name="non-login",
    description="Anonymous onboarding: user info, OTP, demo or live device, account creation.",
    entry_step="user-info-prompt",
    on_start="create-anonymous-session",
    steps=NON_LOGIN_STEPS,
)

POST_LOGIN_FLOW = FlowDefinition(
    name="post-login",
    description="Runs after the first login: session transfer, invitations, notifications, test ticket.",
    entry_step="session-transfer",
    resume_step="session-transfer",
    steps=POST_LOGIN_STEPS,
)

LOGGED_IN_FLOW = FlowDefinition(
    name="logged-in",
    description="Dashboard onboarding of an additional machine for a signed-in user.",
    entry_step="user-question-logged-in",
    resume_step="dashboard-shown",
    steps=LOGGED_IN_STEPS,
)

FLOWS: Dict[str, FlowDefinition] = {
    flow.name: flow for flow in (NON_LOGIN_FLOW, POST_LOGIN_FLOW, LOGGED_IN_FLOW)
}
