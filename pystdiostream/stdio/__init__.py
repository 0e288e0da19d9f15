from pystdiostream.stdio import operators
from pystdiostream.stdio.bridge import create, create_from_config, from_process
from pystdiostream.stdio.config import (
    ControlSignal,
    ExitMethod,
    ProcessLaunchConfig,
    WorkingDirectoryMode,
)
from pystdiostream.stdio.errors import (
    ProcessStreamError,
    ProcessTerminationError,
    StreamTimeoutError,
    SyntheticError,
)
from pystdiostream.stdio.observable import (
    Disposable,
    Observable,
    Subject,
    from_iterable,
)
from pystdiostream.stdio.paths import where

__all__ = [
    "ControlSignal",
    "Disposable",
    "ExitMethod",
    "Observable",
    "ProcessLaunchConfig",
    "ProcessStreamError",
    "ProcessTerminationError",
    "StreamTimeoutError",
    "Subject",
    "SyntheticError",
    "WorkingDirectoryMode",
    "create",
    "create_from_config",
    "from_iterable",
    "from_process",
    "operators",
    "where",
]
