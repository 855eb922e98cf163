"""bpm.integrations — External service gateway modules.

All outbound HTTP calls to third-party APIs must go through a gateway
in this package, never via bare `requests` calls in services or blueprints.

Current gateways:
  blob_store.BunnyStorageGateway — BunnyCDN Storage API (task file uploads)
"""
