"""In-container execution: exec sessions, stream framing and file access."""

from cloudide.runtime.exec_channel import ExecChannel
from cloudide.runtime.files import ContainerFiles
from cloudide.runtime.frames import FrameDecoder

__all__ = ["ContainerFiles", "ExecChannel", "FrameDecoder"]
