"""Game server controllers: host port allocation, GameServer lifecycle and GameServerSet scaling."""

__version__ = "0.1.0"