"""
Station Agent: MQTT telemetry agent for dimensioning stations.

Aggregates the item log on a fixed interval, publishes statistics and storage
health to a broker, and keeps a retained online/offline status (LWT).
"""
