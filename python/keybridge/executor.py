"""
Sandboxed Script Executor - runs user scripts with a fixed set of capabilities.

A script is Python source. It becomes the body of a function whose only
parameters are the capabilities below, so these are the only names a script
gets from keybridge:

- call(name, *args)                    call a peer function
- execute_in_background(func, args)    run ``func`` against a mirror of the peer
- get(name) / set(name, value)         read/write a peer property
- log(value)                           log on the peer
- inject(source)                       run source text in the page's own scope
- storage                              storage namespaced under "script_"
- data                                 dict shared by every script of the page

Hiding host identifiers is a convenience, not isolation: a script can still
reach the host objects through ``globals()``.
"""

import ast
import asyncio
import builtins
import copy
import inspect
import logging
import types
from dataclasses import dataclass, fields
from typing import Any as PyAny, Callable, Dict, Optional, Sequence

from .config import BridgeConfig
from .dispatcher import OperationDispatcher
from .errors import SandboxExecutionError
from .mirror import build_mirror
from .storage import MemoryStorage, StorageManager, create_storage_manager

logger = logging.getLogger(__name__)

HOST_IDENTIFIERS = ("chrome", "browser")
SCRIPT_FILENAME = "<keybridge-script>"
PAGE_SCRIPT_FILENAME = "<page-script>"
_SCRIPT_FUNCTION = "__keybridge_script__"


@dataclass
class ScriptContext:
    """Capabilities handed to a script, in parameter order."""

    call: Callable
    execute_in_background: Callable
    get: Callable
    set: Callable
    log: Callable
    inject: Callable
    storage: StorageManager
    data: Dict[str, PyAny]

    @classmethod
    def parameter_names(cls):
        return tuple(f.name for f in fields(cls))

    def as_arguments(self) -> tuple:
        return tuple(getattr(self, name) for name in self.parameter_names())


class PageScriptInjector:
    """Runs source text once in the page's global namespace. Nothing is returned."""

    def __init__(self, page_globals: Dict[str, PyAny]):
        self.page_globals = page_globals

    def __call__(self, source: str) -> None:
        try:
            exec(compile(source, PAGE_SCRIPT_FILENAME, "exec"), self.page_globals)
        except Exception:
            logger.exception("Injected page script failed")


class PageContext:
    """
    State shared by every script executed in one page.

    The scratch ``data`` dict and the script storage manager are created on
    first use and then kept for the lifetime of the context.
    """

    def __init__(
        self,
        storage_backend: Optional[MemoryStorage] = None,
        host_globals: Optional[Dict[str, PyAny]] = None,
        script_storage_prefix: str = "script_",
    ):
        self.storage_backend = storage_backend or MemoryStorage()
        self.host_globals = dict(host_globals or {})
        self.script_storage_prefix = script_storage_prefix
        self.page_globals: Dict[str, PyAny] = {"__builtins__": builtins, "__name__": "__page__"}
        self.injector = PageScriptInjector(self.page_globals)
        self._data: Optional[Dict[str, PyAny]] = None
        self._script_storage: Optional[StorageManager] = None

    @property
    def data(self) -> Dict[str, PyAny]:
        if self._data is None:
            self._data = {}
        return self._data

    @property
    def script_storage(self) -> StorageManager:
        if self._script_storage is None:
            self._script_storage = create_storage_manager(self.script_storage_prefix, self.storage_backend)
        return self._script_storage


def compile_script(code: str, is_async: bool = True, hide_host_identifiers: bool = False) -> types.CodeType:
    """
    Compile script source into a module defining the script function.

    Raises:
        SyntaxError: If the source does not parse or compile
    """
    body = ast.parse(code, filename=SCRIPT_FILENAME, mode="exec").body
    if hide_host_identifiers:
        prelude = "\n".join(f"{name} = None" for name in HOST_IDENTIFIERS)
        body = ast.parse(prelude, filename=SCRIPT_FILENAME).body + body

    keyword = "async def" if is_async else "def"
    parameters = ", ".join(ScriptContext.parameter_names())
    module = ast.parse(f"{keyword} {_SCRIPT_FUNCTION}({parameters}):\n    pass\n", filename=SCRIPT_FILENAME)
    module.body[0].body = body or [ast.Pass()]
    ast.fix_missing_locations(module)
    return compile(module, SCRIPT_FILENAME, "exec")


def rehydrate(func: PyAny, scope: Dict[str, PyAny]) -> Callable:
    """
    Rebuild ``func`` so that its global names resolve in ``scope``.

    ``func`` may also be source text of an expression evaluating to a callable.
    """
    if isinstance(func, str):
        return eval(func, scope)
    code = getattr(func, "__code__", None)
    if code is None:
        raise TypeError("execute_in_background() needs a function or source text")
    rebound = types.FunctionType(code, scope, func.__name__, func.__defaults__, func.__closure__)
    rebound.__kwdefaults__ = func.__kwdefaults__
    return rebound


class ScriptExecutor:
    """
    Executes user scripts for one page context.

    Usage:
        executor = ScriptExecutor(dispatcher, PageContext())
        await executor.execute("tabs = await call('tabs.query', {})\\nlog(tabs)")
    """

    def __init__(
        self,
        dispatcher: OperationDispatcher,
        page: Optional[PageContext] = None,
        config: Optional[BridgeConfig] = None,
    ):
        self.dispatcher = dispatcher
        self.config = config or BridgeConfig()
        self.page = page or PageContext(script_storage_prefix=self.config.script_storage_prefix)

    async def execute(
        self,
        code: str,
        is_async: Optional[bool] = None,
        hide_host_identifiers: Optional[bool] = None,
        allow_callback_arguments: Optional[bool] = None,
    ) -> None:
        """
        Run a script to completion. Errors are logged, never raised.

        Args:
            code: Script source
            is_async: Compile the script as a coroutine so it may use ``await``
            hide_host_identifiers: Shadow the host globals with None
            allow_callback_arguments: Let peer calls take callback arguments

        Omitted options fall back to the executor's configuration.
        """
        if is_async is None:
            is_async = self.config.is_async
        if hide_host_identifiers is None:
            hide_host_identifiers = self.config.hide_host_identifiers
        if allow_callback_arguments is None:
            allow_callback_arguments = self.config.allow_callback_arguments

        try:
            compiled = compile_script(code, is_async, hide_host_identifiers)
            namespace: Dict[str, PyAny] = {"__builtins__": builtins, "__name__": _SCRIPT_FUNCTION}
            namespace.update(self.page.host_globals)
            exec(compiled, namespace)
            script = namespace[_SCRIPT_FUNCTION]

            context = self.build_context(allow_callback_arguments)
            result = script(*context.as_arguments())
            if inspect.isawaitable(result):
                await result
        except (asyncio.CancelledError, KeyboardInterrupt):
            raise
        except BaseException as e:
            # SystemExit from a script must not end the host
            self._report(SandboxExecutionError(e))

    def _report(self, error: SandboxExecutionError) -> None:
        message = str(error)
        logger.error(message)
        self.dispatcher.log(message)

    def build_context(self, allow_callback_arguments: bool) -> ScriptContext:
        dispatcher = self.dispatcher

        def call(name: str, *args):
            return dispatcher.dispatch(name, list(args), allow_callback_arguments)

        async def execute_in_background(func: PyAny, args: Optional[Sequence[PyAny]] = None):
            mirror = await build_mirror(dispatcher, allow_callback_arguments)
            scope: Dict[str, PyAny] = {"__builtins__": builtins, "log": dispatcher.log}
            # A peer member named log wins over the local one
            for name in mirror:
                scope[name] = mirror[name]
            result = rehydrate(func, scope)(*(args or []))
            if inspect.isawaitable(result):
                result = await result
            return result

        def get(name: str):
            return dispatcher.dispatch(name, [], allow_callback_arguments, is_property_access=True)

        def set_(name: str, value: PyAny):
            return dispatcher.dispatch(name, [value], allow_callback_arguments, is_property_access=True)

        return ScriptContext(
            call=call,
            execute_in_background=execute_in_background,
            get=get,
            set=set_,
            log=dispatcher.log,
            inject=self.page.injector,
            storage=copy.copy(self.page.script_storage),
            data=self.page.data,
        )
