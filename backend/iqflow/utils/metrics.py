# /iqflow/utils/metrics.py

from prometheus_client import Counter, Histogram

# All Prometheus metrics used by the onboarding engine live here.

# Flow engine
steps_rendered_counter = Counter('onboarding_steps_rendered_total', 'Flow steps rendered into the transcript', ['flow', 'actor'])
action_counter = Counter('onboarding_actions_total', 'Flow actions dispatched', ['action', 'status'])
loop_guard_counter = Counter('onboarding_loop_guard_trips_total', 'Advance loops stopped by the loop guard', ['flow'])
trigger_counter = Counter('onboarding_triggers_total', 'Free-text triggers matched', ['target'])

# Persistence
snapshot_operations = Counter('onboarding_snapshot_operations_total', 'Snapshot store operations', ['operation', 'status'])

# Performance
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
platform_call_histogram = Histogram('platform_call_seconds', 'Platform API call duration in seconds', ['endpoint'])
