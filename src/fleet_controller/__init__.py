"""Fleet Controller: IoT device registry, status lifecycle and command fan-out over MQTT."""

__version__ = "1.0.0"
