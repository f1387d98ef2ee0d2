"""rollctl - rolling OS upgrades for Talos clusters."""

__version__ = '0.1.0'
