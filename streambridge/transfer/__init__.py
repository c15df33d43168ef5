"""
Transfer Module - Framed File Transfer

Sends and receives named, exact-length files over streams.
"""

from .codec import (
    FILE_TRANSFER_PROTOCOL,
    CHUNK_SIZE,
    TransferHeader,
    BoundedReader,
    write_frame,
    read_frame,
    expect_end_of_stream,
)
from .session import (
    RAW_TRANSFER_PROTOCOL,
    RECEIVED_PREFIX,
    TransferResult,
    FileSender,
    FileReceiver,
    RawFileReceiver,
    FrameChannel,
    save_payload,
    validate_received_filename,
)

__all__ = [
    'FILE_TRANSFER_PROTOCOL',
    'RAW_TRANSFER_PROTOCOL',
    'RECEIVED_PREFIX',
    'CHUNK_SIZE',
    'TransferHeader',
    'BoundedReader',
    'write_frame',
    'read_frame',
    'expect_end_of_stream',
    'TransferResult',
    'FileSender',
    'FileReceiver',
    'RawFileReceiver',
    'FrameChannel',
    'save_payload',
    'validate_received_filename',
]
