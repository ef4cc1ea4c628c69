"""Restricted execution of SCRIPT node code."""

import json
import keyword
import math
import operator
import re
import sys
import time
from types import SimpleNamespace
from typing import Any, Optional

import structlog
from RestrictedPython import compile_restricted_exec, limited_builtins, safe_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)
from RestrictedPython.PrintCollector import PrintCollector

from ..core.errors import ScriptSandboxError

logger = structlog.get_logger()


class _ScriptDeadline(BaseException):
    """Raised into a script that ran past its time limit."""


def _deadline_tracer(filename: str, deadline: float):
    # Only frames compiled from the snippet are traced
    def trace(frame, event, arg):
        if frame.f_code.co_filename != filename:
            return None
        if time.monotonic() > deadline:
            raise _ScriptDeadline()
        return trace

    return trace


_INPLACE_OPERATORS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "|=": operator.ior,
    "&=": operator.iand,
}


def _inplacevar(op: str, target: Any, value: Any) -> Any:
    func = _INPLACE_OPERATORS.get(op)
    if func is None:
        raise ScriptSandboxError(f"Augmented assignment {op} is not allowed")
    return func(target, value)


# Module stand-ins: only the listed functions, no module internals
_SAFE_MODULES = {
    "json": SimpleNamespace(loads=json.loads, dumps=json.dumps),
    "math": SimpleNamespace(
        ceil=math.ceil,
        floor=math.floor,
        sqrt=math.sqrt,
        pow=math.pow,
        log=math.log,
        log10=math.log10,
        fabs=math.fabs,
        pi=math.pi,
        e=math.e,
    ),
    "re": SimpleNamespace(
        search=re.search,
        match=re.match,
        fullmatch=re.fullmatch,
        findall=re.findall,
        sub=re.sub,
        split=re.split,
        IGNORECASE=re.IGNORECASE,
        MULTILINE=re.MULTILINE,
    ),
}


def _build_builtins() -> dict[str, Any]:
    builtins = dict(safe_builtins)
    builtins.update(limited_builtins)
    builtins.update({
        "dict": dict,
        "list": list,
        "set": set,
        "min": min,
        "max": max,
        "sum": sum,
        "any": any,
        "all": all,
        "enumerate": enumerate,
        "sorted": sorted,
        "reversed": reversed,
        "map": map,
        "filter": filter,
    })
    return builtins


class ScriptSandbox:
    """
    Runs caller-supplied Python snippets under RestrictedPython.

    The snippet sees every context key that is a plain identifier as a
    variable, the full mapping as ``context``, and a few safe helper
    modules (json, math, re). Imports, dunder access and attribute writes on
    foreign objects are unavailable. The snippet returns a value by assigning
    to ``result``; ``print`` output is collected.

    With ``timeout_seconds`` set, a snippet still running past the limit is
    interrupted at its next line. A bare ``except:`` inside the snippet can
    swallow the interruption once.
    """

    RESULT_NAME = "result"

    def __init__(self, timeout_seconds: Optional[float] = 30.0):
        self.timeout_seconds = timeout_seconds
        self._builtins = _build_builtins()

    def compile(self, code: str, filename: str = "<script>"):
        """
        Compile a snippet under the restricting policy.

        Raises:
            ScriptSandboxError: syntax error or policy violation
        """
        compiled = compile_restricted_exec(code, filename=filename)
        if compiled.errors or compiled.code is None:
            raise ScriptSandboxError(
                "Script rejected by sandbox: " + "; ".join(compiled.errors)
            )
        return compiled.code

    def run(
        self,
        code: str,
        bindings: dict[str, Any],
        node_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Execute a snippet.

        Returns:
            {"success": True, "result": ..., "printed": ...} or
            {"success": False, "error": ...} when the script itself raised
            or ran out of time

        Raises:
            ScriptSandboxError: the snippet was rejected or tried to leave
                the sandbox
        """
        filename = f"<script:{node_id or 'anonymous'}>"
        byte_code = self.compile(code, filename=filename)
        namespace = self._build_namespace(bindings, node_id)

        previous_trace = sys.gettrace()
        if self.timeout_seconds:
            sys.settrace(_deadline_tracer(filename, time.monotonic() + self.timeout_seconds))
        try:
            exec(byte_code, namespace)
        except _ScriptDeadline:
            logger.warning("script_timed_out", node_id=node_id, timeout_seconds=self.timeout_seconds)
            return {
                "success": False,
                "error": f"ScriptTimeout: script exceeded {self.timeout_seconds}s",
            }
        except ScriptSandboxError:
            raise
        except ImportError as e:
            raise ScriptSandboxError(f"Imports are not allowed in scripts: {e}", node_id=node_id)
        except Exception as e:
            logger.info("script_raised", node_id=node_id, error=str(e))
            return {"success": False, "error": f"{type(e).__name__}: {e}"}
        finally:
            sys.settrace(previous_trace)

        output: dict[str, Any] = {
            "success": True,
            "result": namespace.get(self.RESULT_NAME),
        }

        collector = namespace.get("_print")
        if isinstance(collector, PrintCollector):
            printed = collector()
            if printed:
                output["printed"] = printed

        return output

    def _build_namespace(
        self,
        bindings: dict[str, Any],
        node_id: Optional[str],
    ) -> dict[str, Any]:
        namespace: dict[str, Any] = {
            "__builtins__": self._builtins,
            "__name__": "rpa_script",
            "_getattr_": safer_getattr,
            "_getitem_": default_guarded_getitem,
            "_getiter_": default_guarded_getiter,
            "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
            "_unpack_sequence_": guarded_unpack_sequence,
            "_write_": full_write_guard,
            "_inplacevar_": _inplacevar,
            "_print_": PrintCollector,
        }
        namespace.update(_SAFE_MODULES)

        for key, value in bindings.items():
            if key.isidentifier() and not key.startswith("_") and not keyword.iskeyword(key):
                namespace[key] = value

        namespace["context"] = dict(bindings)
        namespace["nodeId"] = node_id
        namespace[self.RESULT_NAME] = None
        return namespace
