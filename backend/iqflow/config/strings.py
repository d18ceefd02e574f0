# /iqflow/config/strings.py

# This file contains all user-facing strings the engine emits outside of the
# flow definitions: fallback replies, trigger command answers and the
# resume-time status message. Templates use the same "{{key|default}}" syntax
# as flow steps.

IDLE_FALLBACK = (
    "I didn't catch that. You can ask me to add a machine, show connection details, "
    "switch dashboard graphs, compare sensors, or create a test ticket."
)

UNRECOGNIZED_REPLY = "Sorry, I didn't understand that answer. Please use the options above, or reply in your own words."

HARD_FAILURE = "Something went wrong on our side. Please try again."

HELP = """Thank you for logging in. You can now see the insights of your onboarded machine on the right. You can also:

• **Invite Users**: Share this dashboard
• **Get Recent Tickets**: See what's happening
• **Create Ticket**: Report an issue
• **Assign Tickets**: e.g., "Assign T-123 to Alice"
• **Compare Sensors**: Analyze data
• **Switch Graphs**: e.g., "Switch graphs to Temperature"

What would you like to do?"""

# Trigger commands
CONNECTION_DETAILS = "Here are your connection details:"
CONNECTION_DETAILS_UNAVAILABLE = "Connection details are not available yet. Try after the device is created."

TEST_TICKET_CREATED = (
    "I have generated ticket number {{testTicketId}}. Please check your email as we have sent the ticket "
    "creation notification to you."
)
TEST_TICKET_FAILED = "I couldn't create a test ticket right now."

SWITCH_CHANNEL_DONE = "Switched dashboard graphs to {{graphChannel}}."
SWITCH_CHANNEL_FAILED = "I couldn't switch the dashboard graphs right now."

FORECAST_DONE = "Next maintenance is predicted in {{predictedMaintenanceInDays|an unknown number of}} days ({{predictedMaintenanceDate|date pending}})."
HEALTH_DRIVERS_DONE = "The top drivers of your health score today are: {{healthDriverNames|not available yet}}."
COMPARE_DONE = "Line A vs line B vibration: {{comparisonSummary|no comparison available yet}}"
METRICS_DONE = "Here is the vibration trend and temperature stability for the last {{lastMetricsWindow}}. {{metricsSummary}}"
CORRELATION_DONE = "Correlation between vibration and cycle duration: {{correlation|not available}}"
ANALYTICS_FAILED = "I couldn't fetch that from your machine right now. Please try again in a moment."

ASSIGN_TICKET_DONE = "I've assigned ticket {{assignedTicketId}} to {{assignedTo}}."
ASSIGN_TICKET_FAILED = "I couldn't find ticket {{assignedTicketId|with that ID}}. Please check the ID."
RECENT_TICKETS = "{{recentTicketSummary}}"
RECENT_TICKETS_FAILED = "Failed to fetch tickets."
DRAFT_TICKET_CREATED = "Draft ticket {{testTicketId}} created. Please fill in the details in the Tickets panel."
TICKET_SEEN = (
    "You can assign tickets directly through this chat interface, no need to navigate away.\n\n"
    "Type \"Assign {{testTicketId}} to <name>\" to hand it over, or type \"show me users\" to see the list."
)

INVITES_SENT = "Invited: {{invitedEmails}}"
INVITES_FAILED = "I couldn't send those invitations right now. Please try again."
INVITE_PROMPT = "I can help you invite team members. Who would you like to invite?"
ASSIGNABLE_USERS = "Here are the users you can assign tickets to:\n\n{{assignableUserList}}"

FAULT_SIMULATED = (
    "Great, I've triggered the simulated fault. You should soon see:\n\n"
    "• A drop in the Health Score\n"
    "• A fault notification\n"
    "• A newly generated ticket in the Tickets section of your dashboard\n\n"
    "Let me know once you see the ticket appear, and I'll walk you through assigning it to the right person."
)
FAULT_LIVE_MACHINE = (
    "Since this is a live machine, I can't introduce a fault. You can safely create or reproduce a minor "
    "test condition on your side; let me know once you've induced it."
)

RESTART_ONBOARDING = "Ready to onboard a new machine?"
RESTART_ONBOARDING_DETAIL = (
    "Click the button below to start fresh with a new demo or live machine. "
    "Your current dashboard will remain accessible."
)

# Resumption
DEVICE_STATUS_RESUMED = "Resuming your machine setup. Here is the live status of device {{deviceId}}:"
