"""MongoDB oplog messages, compression, batch planning and file and TCP tunnels."""

__version__ = "0.1.0"