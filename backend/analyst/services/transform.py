"""
Sandboxed transform runner.

AI-written transformation code arrives as the body of a Python function that
receives the row list as ``data`` and must return a new list of row dicts.
The body is parsed and screened before it runs: imports, generators,
private attributes, frame/code introspection attributes and the builtins that
reach outside the sandbox are rejected. Only a small set of builtins plus the
``re``, ``math`` and ``datetime`` modules are exposed.

Screened code then runs in a separate spawned process with a hard deadline,
so a transform that never finishes is killed instead of hanging the server.
"""
import ast
import asyncio
import builtins
import datetime
import logging
import math
import multiprocessing
import pickle
import re
import textwrap
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

from analyst.core.config import get_settings
from analyst.core.errors import TransformError
from analyst.core.performance import track_performance
from analyst.core.schemas import Row

logger = logging.getLogger(__name__)

FUNCTION_NAME = "transform"

FORBIDDEN_NAMES = frozenset((
    "__import__", "eval", "exec", "compile", "open", "input", "breakpoint",
    "globals", "locals", "vars", "getattr", "setattr", "delattr", "help",
    "memoryview", "exit", "quit", "__builtins__",
))

# Generator, coroutine, frame, traceback and code object internals
FORBIDDEN_ATTRIBUTE_PREFIXES = ("_", "gi_", "cr_", "ag_", "f_", "tb_", "co_")
FORBIDDEN_ATTRIBUTES = frozenset(("mro", "format_map"))

FORBIDDEN_NODES = {
    ast.Import: "Imports are not allowed",
    ast.ImportFrom: "Imports are not allowed",
    ast.Global: "global/nonlocal statements are not allowed",
    ast.Nonlocal: "global/nonlocal statements are not allowed",
    ast.Yield: "Generators are not allowed",
    ast.YieldFrom: "Generators are not allowed",
    ast.Await: "async code is not allowed",
    ast.AsyncFunctionDef: "async code is not allowed",
    ast.AsyncFor: "async code is not allowed",
    ast.AsyncWith: "async code is not allowed",
}

SAFE_BUILTINS: Dict[str, Any] = {
    name: getattr(builtins, name)
    for name in (
        "abs", "all", "any", "bool", "dict", "enumerate", "filter", "float",
        "int", "isinstance", "len", "list", "map", "max", "min", "range",
        "reversed", "round", "set", "sorted", "str", "sum", "tuple", "zip",
        "Exception", "ValueError", "TypeError", "KeyError", "IndexError",
        "ZeroDivisionError", "AttributeError",
    )
}

# Narrow stand-ins so module attributes cannot lead back to sys or os
SAFE_MODULES = {
    "math": math,
    "re": SimpleNamespace(
        compile=re.compile, search=re.search, match=re.match, fullmatch=re.fullmatch,
        sub=re.sub, split=re.split, findall=re.findall, IGNORECASE=re.IGNORECASE, I=re.I,
    ),
    "datetime": SimpleNamespace(
        datetime=datetime.datetime, date=datetime.date, time=datetime.time,
        timedelta=datetime.timedelta, timezone=datetime.timezone,
    ),
}

_process_context = multiprocessing.get_context("spawn")


def _reject(node: ast.AST, reason: str) -> None:
    # Line 1 is the generated def header
    line = getattr(node, "lineno", None)
    where = f" (line {line - 1})" if line and line > 1 else ""
    raise ValueError(f"{reason}{where}")


def _screen(tree: ast.AST) -> None:
    """Walk the parsed code and refuse anything that could escape the sandbox."""
    for node in ast.walk(tree):
        reason = FORBIDDEN_NODES.get(type(node))
        if reason:
            _reject(node, reason)
        elif isinstance(node, ast.Name) and (node.id in FORBIDDEN_NAMES or node.id.startswith("__")):
            _reject(node, f"Use of '{node.id}' is not allowed")
        elif isinstance(node, ast.Attribute) and (
            node.attr.startswith(FORBIDDEN_ATTRIBUTE_PREFIXES) or node.attr in FORBIDDEN_ATTRIBUTES
        ):
            _reject(node, f"Access to attribute '{node.attr}' is not allowed")


def compile_transform(function_body: str):
    """
    Wrap ``function_body`` as ``def transform(data):`` and return the callable.

    Raises ValueError or SyntaxError for code that is malformed or not allowed.
    """
    body = textwrap.dedent(function_body).strip("\n") or "pass"
    source = f"def {FUNCTION_NAME}(data):\n{textwrap.indent(body, '    ')}\n"
    tree = ast.parse(source, filename="<transform>")
    _screen(tree)

    namespace: Dict[str, Any] = {"__builtins__": SAFE_BUILTINS, **SAFE_MODULES}
    exec(compile(tree, "<transform>", "exec"), namespace)
    return namespace[FUNCTION_NAME]


def _validate_result(result: Any) -> List[Row]:
    if result is None:
        raise ValueError("The transform did not return anything; it must return a list of rows")
    if not isinstance(result, list):
        raise ValueError(
            f"The transform must return a list of rows, but it returned {type(result).__name__}"
        )
    for index, row in enumerate(result):
        if not isinstance(row, dict):
            raise ValueError(
                f"Every row must be a dict, but item {index} is {type(row).__name__}"
            )
    return result


def _load(function_body: str):
    try:
        return compile_transform(function_body)
    except SyntaxError as e:
        raise TransformError(
            function_body, f"Syntax error in transform code: {e.msg} (line {max((e.lineno or 1) - 1, 1)})"
        ) from e
    except ValueError as e:
        raise TransformError(function_body, f"Transform code rejected: {e}") from e


def execute_transform(rows: List[Row], function_body: str) -> List[Row]:
    """Compile, run and validate the transform in the current process."""
    transform = _load(function_body)

    working_copy = [dict(row) for row in rows]
    try:
        result = transform(working_copy)
    except Exception as e:
        raise TransformError(function_body, f"Transform raised {type(e).__name__}: {e}") from e

    try:
        return _validate_result(result)
    except ValueError as e:
        raise TransformError(function_body, str(e)) from e


def _child_main(conn, rows: List[Row], function_body: str) -> None:
    """Entry point of the worker process: send back ("ok", rows) or ("error", cause)."""
    try:
        outcome = ("ok", execute_transform(rows, function_body))
    except TransformError as e:
        outcome = ("error", e.cause)
    try:
        conn.send(outcome)
    except (pickle.PicklingError, TypeError, AttributeError) as e:
        conn.send(("error", f"The transform returned values that are not plain row data: {e}"))
    finally:
        conn.close()


def _stop(process) -> None:
    if process.is_alive():
        process.terminate()
        process.join(1)
        if process.is_alive():
            process.kill()
    process.join()


@track_performance("run_transform")
def run_transform(rows: List[Row], function_body: str, timeout: Optional[float] = None) -> List[Row]:
    """
    Execute ``function_body`` against copies of ``rows`` in a worker process.

    Code is screened here first so rejected code never starts a process.
    ``timeout`` defaults to the ``transform_timeout_seconds`` setting.

    Raises:
        TransformError: the code was rejected, raised, ran past the deadline,
            or returned something other than a list of dicts. Carries the
            offending code.
    """
    _load(function_body)
    if timeout is None:
        timeout = get_settings().transform_timeout_seconds

    receiver, sender = _process_context.Pipe(duplex=False)
    process = _process_context.Process(
        target=_child_main, args=(sender, rows, function_body), daemon=True
    )
    process.start()
    sender.close()
    try:
        if not receiver.poll(timeout):
            logger.warning(f"Transform killed after {timeout:g}s without finishing")
            raise TransformError(function_body, f"Transform did not finish within {timeout:g} seconds")
        try:
            status, payload = receiver.recv()
        except EOFError:
            process.join(1)
            raise TransformError(
                function_body, f"Transform process exited unexpectedly (exit code {process.exitcode})"
            ) from None
    finally:
        receiver.close()
        _stop(process)

    if status == "error":
        raise TransformError(function_body, payload)

    logger.info(f"Transform produced {len(payload)} rows from {len(rows)}")
    return payload


async def run_transform_async(rows: List[Row], function_body: str,
                              timeout: Optional[float] = None) -> List[Row]:
    """``run_transform`` off the event loop."""
    return await asyncio.to_thread(run_transform, rows, function_body, timeout)
