"""
Live device connections.

The weighing scale is reached through an HTTP device service; these classes
implement SampleSource and DeviceProbe against it.
"""

from .http_source import HttpSampleSource, HttpDeviceProbe

__all__ = [
    "HttpSampleSource",
    "HttpDeviceProbe",
]
