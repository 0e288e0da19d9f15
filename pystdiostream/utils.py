import collections.abc
import contextlib
import dataclasses
import inspect
import json
import logging
import threading
import typing

import pythonjsonlogger.defaults as d
import pythonjsonlogger.json

logger = logging.getLogger(__name__)


class Once:
    """Run fn at most one time, even when run is raced from several threads."""

    _has_run: bool = False
    _fn: collections.abc.Callable[[], None]
    _lock: threading.Lock

    def __init__(self, fn: collections.abc.Callable[[], None]) -> None:
        self._fn = fn
        self._lock = threading.Lock()

    @property
    def has_run(self) -> bool:
        return self._has_run

    def run(self) -> bool:
        """Returns True only for the call that actually ran fn"""
        with self._lock:
            if self._has_run:
                return False
            self._has_run = True
        self._fn()
        return True


_logging_configured = Once(lambda: None)


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())

    # handlers are only added once so repeated calls (e.g. per test) do not
    # duplicate output
    if not _logging_configured.run():
        return

    log_handler = logging.StreamHandler()
    formatter = pythonjsonlogger.json.JsonFormatter(
        "{message}{asctime}{exc_info}{levelname}{funcname}{lineno}{module}"
        "{name}{process}{thread}{threadName}",
        style="{",
        json_default=json_default,
    )
    log_handler.setFormatter(formatter)
    root.addHandler(log_handler)


def log_extra(**kwargs: typing.Any) -> dict[str, typing.Any]:
    return {"extra": kwargs}


@contextlib.contextmanager
def best_effort(step: str, **context: typing.Any) -> typing.Iterator[None]:
    """
    Teardown step whose failure is logged and discarded.

    A failing step never prevents the steps after it from running and never
    reaches the consumer.
    """
    try:
        yield
    except Exception as ex:  # pylint: disable=W0718:broad-exception-caught
        logger.debug(
            "teardown step failed",
            extra=log_extra(step=step, error=ex, **context),
        )


def json_default(obj: typing.Any) -> typing.Any:
    """
    Function to use for json serializer json_default.  Given an object it
    returns a new object to serialize in its place.

    Objects with a zero-argument obj_json_default (process handles, launch
    configs, stream errors) are replaced by its result.

    Raising an exception here results in the object being serialized as-is
    """
    return _python_json_logger_default(obj)


_encoder = json.JSONEncoder()


def _use_obj_json_default(obj: typing.Any) -> bool:
    jd = getattr(obj, "obj_json_default", None)
    if jd is None or not callable(jd):
        return False

    # let it raise if we can't get a signature.  An exception causes it to
    # serialize the object as-is
    sig: inspect.Signature = inspect.signature(jd)

    # expect 0 arguments.  "self" is removed by inspect.signature
    return not sig.parameters


class DataclassInstance(typing.Protocol):
    """Interned from standard typeshed"""

    __dataclass_fields__: typing.ClassVar[dict[str, dataclasses.Field[typing.Any]]]


def _use_dataclass_default(obj: typing.Any) -> typing.TypeIs[DataclassInstance]:
    return dataclasses.is_dataclass(obj) and not isinstance(obj, type)


def _dataclass_default(obj: DataclassInstance) -> dict[str, typing.Any]:
    """Interned from python-json-logger and modified to recurse"""
    return {
        field.name: _python_json_logger_default(getattr(obj, field.name))
        for field in dataclasses.fields(obj)
    }


def _python_json_logger_default(o: typing.Any) -> typing.Any:
    """Interned from python-json-logger and modified"""
    if _use_obj_json_default(o):
        return _python_json_logger_default(o.obj_json_default())

    if isinstance(o, (str, int, float, bool)) or o is None:
        return o

    if isinstance(o, (list, tuple, frozenset, set)):
        return [_python_json_logger_default(i) for i in o]

    if isinstance(o, dict):
        return {str(k): _python_json_logger_default(v) for k, v in o.items()}

    if d.use_datetime_any(o):
        return d.datetime_any(o)

    if d.use_exception_default(o):
        return d.exception_default(o)

    if d.use_traceback_default(o):
        return d.traceback_default(o)

    if d.use_enum_default(o):
        return d.enum_default(o)

    if d.use_bytes_default(o):
        return d.bytes_default(o)

    if _use_dataclass_default(o):
        return _dataclass_default(o)

    if d.use_type_default(o):
        return d.type_default(o)

    try:
        return _encoder.default(o)
    except TypeError:
        return d.unknown_default(o)
