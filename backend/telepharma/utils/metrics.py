# /telepharma/utils/metrics.py

from prometheus_client import Counter, Histogram

# This file defines all Prometheus metrics used for application monitoring.
# Centralizing them here makes them easy to find and manage.

# Conversation Metrics
inbound_events_counter = Counter('inbound_events_total', 'Inbound WhatsApp events processed', ['outcome'])
validation_rejections_counter = Counter('validation_rejections_total', 'Inputs rejected by field validation', ['error_code'])
flow_transitions_counter = Counter('flow_transitions_total', 'Conversation transitions', ['kind'])
event_processing_histogram = Histogram('event_processing_seconds', 'Time to process one inbound event')

# Business Metrics
orders_created_counter = Counter('orders_created_total', 'Orders created from the chat', ['order_type'])
service_requests_counter = Counter('service_requests_total', 'Consultations and enquiries filed', ['service_type'])
sweep_resets_counter = Counter('session_sweep_resets_total', 'Stale sessions silently reset by the sweeper')

# Infrastructure Metrics
outbound_messages_counter = Counter('outbound_messages_total', 'Outbound WhatsApp deliveries', ['status'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])
cache_operations = Counter('cache_operations_total', 'Cache operations', ['operation', 'status'])
webhook_signature_counter = Counter('webhook_signature_verifications_total', 'Webhook signature verifications', ['status'])
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
