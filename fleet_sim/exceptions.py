"""Exception hierarchy for the virtual device fleet."""


class FleetSimError(Exception):
    """Base class for all fleet simulator errors."""


class BrokerConnectionError(FleetSimError, ConnectionError):
    """Raised when a device cannot reach the MQTT broker."""


class ConfigurationError(FleetSimError, ValueError):
    """Raised for invalid device, scenario or action configuration."""


class UnknownDeviceKindError(ConfigurationError):
    """Raised when a device kind is not one of button/smartwatch/repeater."""


class UnknownFailureKindError(ConfigurationError):
    """Raised when a failure scenario names an unsupported failure kind."""


class UnknownScenarioError(ConfigurationError):
    """Raised when a predefined or canned test scenario does not exist."""


class UnknownActionError(ConfigurationError):
    """Raised when an operator action is not supported by the device."""


class DeviceNotFoundError(FleetSimError, KeyError):
    """Raised when a device id is not managed by the fleet."""


class DuplicateDeviceError(FleetSimError):
    """Raised when creating a device with an id that is already in use."""
