from . import _version

__version__ = _version.__version__


from .client import NomadClient
from .credentials import NomadCredentials
from .exceptions import (
    NomadBadRequestError,
    NomadConfigError,
    NomadConnectionError,
    NomadError,
    NomadLoaderError,
    NomadNotFoundError,
    NomadPermissionError,
    NomadRequestError,
    NomadResponseError,
    NomadTimeoutError,
)
from .logs import LogChunk, start_log_stream, stream_logs
from .polling import PollHandle, PollOutcome, PollResult, poll_until
from .transport import HttpxTransport, NomadResponse, Transport
from .waiters import WaitOutcome, WaitResult, wait_for_status
