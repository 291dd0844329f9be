"""Account-abstraction transaction layer: ERC-4337 UserOperations and EIP-7702 delegation."""

__version__ = "0.1.0"
