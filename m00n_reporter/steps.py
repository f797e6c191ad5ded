"""
Step recording.

Two ways to record steps, producing identical Step records:

1. The ``step`` decorator / context manager:

    @step("Open {url}")
    def open_page(page, url): ...

    with step("Fill the login form"):
        ...

2. ``step_proxy``: wrap an object so its marked methods record steps without
   editing call sites.

    login = step_proxy(LoginPage(page))
    login.submit("admin")

Outside an active test execution the wrapped code runs untouched.
"""

import functools
import inspect
import logging
import re
from contextvars import ContextVar, Token
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from m00n_reporter.context import CorrelationState, current_state
from m00n_reporter.models import Step

logger = logging.getLogger("m00n_reporter")

STEP_MARKER = "__m00n_step__"
DEFAULT_CATEGORY = "step"
MAX_ARGUMENT_LENGTH = 200
MAX_COLLECTION_ITEMS = 5
RECEIVER_NAMES = ("self", "cls")

_PLACEHOLDER = re.compile(r"\{([^{}]*)\}")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

_depth: ContextVar[int] = ContextVar("m00n_step_depth", default=0)


@dataclass(frozen=True)
class StepSpec:
    """Title template and category attached to a marked callable."""
    title: Optional[str] = None
    category: str = DEFAULT_CATEGORY


# ============================================================================
# Title Resolution
# ============================================================================

def humanize(name: str) -> str:
    """
    Turn an identifier into a sentence.

    ``click_login_button`` and ``clickLoginButton`` both become
    ``Click login button``.
    """
    words = _CAMEL_BOUNDARY.sub(" ", name).replace("_", " ").split()
    if not words:
        return name
    text = " ".join(words).lower()
    return text[0].upper() + text[1:]


def format_argument(value: Any) -> str:
    """Render an argument for a step title."""
    if value is None:
        return "null"
    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
        if len(items) <= MAX_COLLECTION_ITEMS:
            return "[" + ", ".join(_format_item(item) for item in items) + "]"
        head = ", ".join(_format_item(item) for item in items[:2])
        return f"[{head}, ... ({len(items)} items)]"
    return _truncate(_to_text(value))


def _format_item(value: Any) -> str:
    return "null" if value is None else _truncate(_to_text(value))


def _to_text(value: Any) -> str:
    try:
        return str(value)
    except Exception:
        return f"<{type(value).__name__}>"


def _truncate(text: str) -> str:
    if len(text) > MAX_ARGUMENT_LENGTH:
        return text[:MAX_ARGUMENT_LENGTH] + "..."
    return text


def resolve_title(
    template: Optional[str],
    func: Callable,
    args: Sequence[Any] = (),
    kwargs: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Fill ``{0}``-style and ``{name}``-style placeholders from call arguments.

    Positional indices skip the ``self``/``cls`` receiver. Placeholders that
    match neither an index in range nor a parameter name are left as-is.
    """
    if template is None:
        return humanize(getattr(func, "__name__", "step"))

    kwargs = kwargs or {}
    positional, named = _call_arguments(func, args, kwargs)

    def substitute(match: "re.Match[str]") -> str:
        token = match.group(1).strip()
        if token.isdecimal():
            try:
                index = int(token)
            except ValueError:
                return match.group(0)
            if index < len(positional):
                return format_argument(positional[index])
        elif token in named:
            return format_argument(named[token])
        return match.group(0)

    return _PLACEHOLDER.sub(substitute, template)


def _call_arguments(
    func: Callable, args: Sequence[Any], kwargs: Dict[str, Any]
) -> Tuple[List[Any], Dict[str, Any]]:
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError):
        return list(args), dict(kwargs)

    params = signature.parameters
    try:
        bound = signature.bind_partial(*args, **kwargs)
    except TypeError:
        skip_receiver = bool(params) and next(iter(params)) in RECEIVER_NAMES and len(args) > 0
        return list(args[1:] if skip_receiver else args), dict(kwargs)
    bound.apply_defaults()

    receiver = next(iter(params), None)
    positional: List[Any] = []
    named: Dict[str, Any] = {}
    for name, value in bound.arguments.items():
        kind = params[name].kind
        if name == receiver and name in RECEIVER_NAMES:
            continue
        if kind is inspect.Parameter.VAR_POSITIONAL:
            positional.extend(value)
        elif kind is inspect.Parameter.VAR_KEYWORD:
            named.update(value)
        elif kind is inspect.Parameter.KEYWORD_ONLY:
            named[name] = value
        else:
            positional.append(value)
            named[name] = value
    return positional, named


# ============================================================================
# Recording
# ============================================================================

@dataclass
class _OpenStep:
    state: CorrelationState
    step: Step
    token: Token


def _open(
    title: Callable[[], str], category: str, fallback: Callable[[], str] = lambda: "Step"
) -> Optional[_OpenStep]:
    state = current_state()
    if state is None or state.reported:
        return None

    try:
        resolved = title()
    except Exception as e:
        resolved = fallback()
        logger.debug(f"Could not resolve step title, using '{resolved}': {e}")

    depth = _depth.get()
    record = state.execution.add_step(resolved, category, nesting_level=depth)
    state.reporter.stream_step(state.execution, record, "append")
    return _OpenStep(state, record, _depth.set(depth + 1))


def _close(opened: _OpenStep, error: Optional[BaseException]) -> None:
    try:
        _depth.reset(opened.token)
    except ValueError:
        _depth.set(max(opened.step.nesting_level, 0))
    opened.step.finish(error)
    opened.state.reporter.stream_step(opened.state.execution, opened.step, "end")


def _fallback_title(spec: StepSpec, func: Callable) -> str:
    return spec.title or humanize(getattr(func, "__name__", "step"))


def _invoke(spec: StepSpec, func: Callable, args: tuple, kwargs: dict, call: Callable[[], Any]) -> Any:
    opened = _open(
        lambda: resolve_title(spec.title, func, args, kwargs),
        spec.category,
        lambda: _fallback_title(spec, func),
    )
    if opened is None:
        return call()
    try:
        result = call()
    except BaseException as e:
        _close(opened, e)
        raise
    _close(opened, None)
    return result


async def _ainvoke(spec: StepSpec, func: Callable, args: tuple, kwargs: dict, call: Callable[[], Any]) -> Any:
    opened = _open(
        lambda: resolve_title(spec.title, func, args, kwargs),
        spec.category,
        lambda: _fallback_title(spec, func),
    )
    if opened is None:
        return await call()
    try:
        result = await call()
    except BaseException as e:
        _close(opened, e)
        raise
    _close(opened, None)
    return result


def _wrap(func: Callable, spec: StepSpec) -> Callable:
    if inspect.iscoroutinefunction(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            return await _ainvoke(spec, func, args, kwargs, lambda: func(*args, **kwargs))
        wrapper = async_wrapper
    else:
        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            return _invoke(spec, func, args, kwargs, lambda: func(*args, **kwargs))
        wrapper = sync_wrapper

    setattr(wrapper, STEP_MARKER, spec)
    return wrapper


class step:
    """
    Record a step around a function call or a block.

    Usage:
        @step
        def click_login_button(page): ...

        @step("Search for {query}", category="action")
        async def search(page, query): ...

        with step("Verify the cart"):
            ...
    """

    def __new__(cls, title: Any = None, category: str = DEFAULT_CATEGORY):
        if callable(title):
            return _wrap(title, StepSpec(None, category))
        return super().__new__(cls)

    def __init__(self, title: Optional[str] = None, category: str = DEFAULT_CATEGORY):
        self.spec = StepSpec(title, category)
        self._open: List[Optional[_OpenStep]] = []

    def __call__(self, func: Callable) -> Callable:
        return _wrap(func, self.spec)

    def __enter__(self) -> Optional[Step]:
        opened = _open(lambda: self.spec.title or "Step", self.spec.category)
        self._open.append(opened)
        return opened.step if opened else None

    def __exit__(self, exc_type, exc, tb) -> bool:
        opened = self._open.pop()
        if opened is not None:
            _close(opened, exc)
        return False

    async def __aenter__(self) -> Optional[Step]:
        return self.__enter__()

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return self.__exit__(exc_type, exc, tb)


def step_spec(obj: Any) -> Optional[StepSpec]:
    return getattr(obj, STEP_MARKER, None)


# ============================================================================
# Proxy
# ============================================================================

class StepProxy:
    """
    Facade that records a step for every marked method of the target.

    Marks come from ``interface`` when given (a class whose methods carry
    ``@step``), otherwise from the target's own class. A target method that is
    already decorated is called unwrapped so each call records one step.
    """

    def __init__(self, target: Any, interface: Optional[type] = None):
        object.__setattr__(self, "_target", target)
        object.__setattr__(self, "_interface", interface)

    def __getattr__(self, name: str) -> Any:
        target = object.__getattribute__(self, "_target")
        interface = object.__getattribute__(self, "_interface")
        attr = getattr(target, name)

        source = interface if interface is not None else type(target)
        spec = step_spec(getattr(source, name, None))
        if spec is None or not callable(attr):
            return attr

        raw = getattr(attr, "__wrapped__", None) if step_spec(attr) else None
        if raw is not None:
            func, receiver = raw, (target,)
        else:
            func, receiver = attr, ()

        if inspect.iscoroutinefunction(func):
            async def async_method(*args, **kwargs):
                call_args = receiver + args
                return await _ainvoke(spec, func, call_args, kwargs, lambda: func(*call_args, **kwargs))
            return functools.wraps(func)(async_method)

        def method(*args, **kwargs):
            call_args = receiver + args
            return _invoke(spec, func, call_args, kwargs, lambda: func(*call_args, **kwargs))
        return functools.wraps(func)(method)

    def __setattr__(self, name: str, value: Any) -> None:
        setattr(object.__getattribute__(self, "_target"), name, value)

    def __repr__(self) -> str:
        return f"StepProxy({object.__getattribute__(self, '_target')!r})"


def step_proxy(target: Any, interface: Optional[type] = None) -> Any:
    return StepProxy(target, interface)
