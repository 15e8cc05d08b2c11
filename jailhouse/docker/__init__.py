"""Docker control endpoint client: transport, attach demultiplexing, lifecycle."""

from jailhouse.docker.demux import AttachStreamDemuxer
from jailhouse.docker.driver import DockerDriver
from jailhouse.docker.transport import DockerTransport, HijackedStream, HttpResponse


__all__ = [
    "AttachStreamDemuxer",
    "DockerDriver",
    "DockerTransport",
    "HijackedStream",
    "HttpResponse",
]
