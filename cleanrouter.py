"""
Clean URL router.

Maps request method and path to registered route patterns, extracts path
variables and invokes handlers looked up by name.

License: MIT
"""

import abc
import enum
import functools
import json
import logging
import re
from dataclasses import asdict as dataclass_asdict, dataclass, is_dataclass
from http import HTTPStatus
from types import GeneratorType
from typing import (
    Any, Callable, Dict, Iterable, Iterator, List, Mapping, NamedTuple, Optional, Sequence, Set, Tuple, Union
)
from urllib.parse import quote, unquote

__all__ = [
    'DevicePolicy', 'NotFoundPolicy',
    'HTTPError', 'NotFoundError',
    'RoutePattern', 'RouteDefinition', 'ActionRoute', 'ConstructorRoute', 'RouteTable',
    'FactoryRegistry', 'NormalizedRequest', 'normalize_request', 'resolve_location',
    'RouteMatch', 'Invoked', 'Redirected', 'NotFound', 'Dispatcher',
    'Request', 'RouterConfig', 'WsgiApp',
]

_CONTENT_LENGTH_HEADER = 'Content-Length'
_CONTENT_TYPE_HEADER = 'Content-Type'
_CONTENT_TYPE_APPLICATION_JSON = 'application/json'
_LOCATION_HEADER = 'Location'

_WSGI_CONTENT_LENGTH_HEADER = 'CONTENT_LENGTH'
_WSGI_PATH_INFO_HEADER = 'PATH_INFO'
_WSGI_REQUEST_METHOD_HEADER = 'REQUEST_METHOD'
_WSGI_SCRIPT_NAME_HEADER = 'SCRIPT_NAME'

_NO_DATA_BODY = b''
_NO_DATA_RESULT = _NO_DATA_BODY,

_STATUSES_WITHOUT_CONTENT = frozenset(
    (s for s in HTTPStatus if (s >= 100 and s < 200) or s in (HTTPStatus.NO_CONTENT, HTTPStatus.NOT_MODIFIED)),
)
_STATUS_ROW_FROM_CODE = {s.value: f'{s} {s.phrase}' for s in HTTPStatus}

_PATH_SEPARATOR = '/'
_QUERY_SEPARATOR = '?'
_ACTION_SEPARATOR = ':'
# single path segment may carry embedded separators encoded as double underscore
_ENCODED_PATH_SEPARATOR = '__'

_VARIABLE_PATTERN = re.compile(r'^\{(.+)\}$')
_FULL_URL_PATTERN = re.compile(r'^https?://')

_NO_DEPENDENCIES: Tuple[str, ...] = ()

_logger = logging.getLogger('cleanrouter')


class cached_property:  # noqa: N801
    """
    Cached property implementation.

    Implementation without locking, see: https://bugs.python.org/issue43468
    """

    def __init__(self, func):
        self.func = func
        self.attrname = None
        self.__doc__ = func.__doc__

    def __set_name__(self, owner, name):
        if self.attrname is None:
            self.attrname = name
        elif name != self.attrname:
            raise TypeError(
                f'Cannot assign the same cached_property to two different names ({self.attrname!r} and {name!r}).'
            )

    def __get__(self, instance, owner=None):
        if instance is None:
            return self
        if self.attrname is None:
            raise TypeError('Cannot use cached_property instance without calling __set_name__ on it.')

        value = self.func(instance)
        instance.__dict__[self.attrname] = value
        return value


class DevicePolicy(str, enum.Enum):
    AUTO = 'auto'
    MOBILE = 'mobile'
    WEB = 'web'
    API = 'api'


class NotFoundPolicy(str, enum.Enum):
    REDIRECT = 'redirect'
    ERROR = 'error'


class HTTPError(Exception):
    def __init__(self, status: HTTPStatus, result=None, headers: Optional[dict] = None) -> None:
        self.status = status
        self.result = status.description if result is None and status not in _STATUSES_WITHOUT_CONTENT else result
        self.headers = headers


class NotFoundError(HTTPError):
    def __init__(self, path_info: str) -> None:
        super().__init__(HTTPStatus.NOT_FOUND, {'status': HTTPStatus.NOT_FOUND.value, 'path': path_info})
        self.path_info = path_info


class LiteralSegment:
    __slots__ = ('text', 'key')

    def __init__(self, text: str) -> None:
        self.text = text
        self.key: Optional[str] = text.lower()

    def accept(self, bindings: dict, path_segment: str) -> bool:
        return path_segment.lower() == self.key


class VariableSegment:
    __slots__ = ('name',)

    # all variables share one shape, names do not take part in route equality
    key: Optional[str] = None

    def __init__(self, name: str) -> None:
        self.name = name

    def accept(self, bindings: dict, path_segment: str) -> bool:
        bindings[self.name] = path_segment.replace(_ENCODED_PATH_SEPARATOR, _PATH_SEPARATOR)
        return True


class RoutePattern:
    """
    Parsed route pattern.

    Segment 0 is the uppercased method, the rest are literals or ``{name}`` variables.
    Patterns are equal when they have the same shape: segment count, variable positions
    and literal text compared case-insensitively.
    """

    __slots__ = ('route_path', 'segments', 'key')

    def __init__(self, method: str, route_path: str) -> None:
        self.route_path = route_path
        self.segments = _parse_route_pattern(method, route_path)
        self.key = tuple(s.key for s in self.segments)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RoutePattern):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __len__(self) -> int:
        return len(self.segments)

    def __repr__(self) -> str:
        return f'RoutePattern({self.segments[0].text!r}, {self.route_path!r})'

    @property
    def method(self) -> str:
        return self.segments[0].text

    @property
    def variable_names(self) -> Tuple[str, ...]:
        return tuple(s.name for s in self.segments if isinstance(s, VariableSegment))

    def match(self, segments: Sequence[str]) -> Optional[Dict[str, str]]:
        if len(segments) != len(self.segments):
            return None

        bindings: Dict[str, str] = {}
        for pattern_segment, path_segment in zip(self.segments, segments):
            if not pattern_segment.accept(bindings, path_segment):
                return None

        return bindings


@dataclass(frozen=True)
class RouteDefinition(abc.ABC):
    pattern: RoutePattern
    handler_name: str
    args: Any
    dependencies: Tuple[str, ...]
    device: DevicePolicy

    @abc.abstractmethod
    def invoke(self, factory: Callable, dependencies: list, bindings: Dict[str, str], body: bytes) -> Any:
        pass


@dataclass(frozen=True)
class ConstructorRoute(RouteDefinition):
    """Route with ``Name`` handler reference, the handler gets the whole request context on construction."""

    def invoke(self, factory: Callable, dependencies: list, bindings: Dict[str, str], body: bytes) -> Any:
        return factory(self.args, bindings, body)


@dataclass(frozen=True)
class ActionRoute(RouteDefinition):
    """Route with ``Name:action`` handler reference, named action is called on constructed handler."""

    action: str

    def invoke(self, factory: Callable, dependencies: list, bindings: Dict[str, str], body: bytes) -> Any:
        handler = factory(self.args)
        return getattr(handler, self.action)(*dependencies, bindings, body)


class RouteTable:
    def __init__(self) -> None:
        self.routes: List[RouteDefinition] = []
        self.patterns: Set[RoutePattern] = set()

    def __iter__(self) -> Iterator[RouteDefinition]:
        return iter(self.routes)

    def __len__(self) -> int:
        return len(self.routes)

    def all(self) -> Tuple[RouteDefinition, ...]:
        return tuple(self.routes)

    def register(self,
                 method: str,
                 route_path: str,
                 handler: str,
                 args: Any = None,
                 dependencies: Iterable[str] = _NO_DEPENDENCIES,
                 device: Union[DevicePolicy, str] = DevicePolicy.AUTO) -> bool:
        """Add route, returns False and leaves table untouched if route with same shape exists."""
        pattern = RoutePattern(method, route_path)
        dependencies = tuple(dependencies)

        try:
            device = DevicePolicy(device)
        except ValueError:
            raise ValueError(f'{route_path}: unknown device policy {device}') from None

        reference = handler.split(_ACTION_SEPARATOR)
        if len(reference) > 2 or not all(reference):
            raise ValueError(f'{route_path}: invalid handler reference {handler!r}')

        if len(reference) == 2:
            definition = ActionRoute(pattern, reference[0], args, dependencies, device, reference[1])
        elif dependencies:
            raise ValueError(f'{route_path}: dependencies {", ".join(dependencies)} need an action handler')
        else:
            definition = ConstructorRoute(pattern, reference[0], args, dependencies, device)

        if pattern in self.patterns:
            _logger.warning('%s %s: route already registered', pattern.method, route_path)
            return False

        self.patterns.add(pattern)
        self.routes.append(definition)
        return True


class FactoryRegistry:
    def __init__(self, mapping: Optional[Mapping[str, Callable]] = None) -> None:
        self.factories: Dict[str, Callable] = {}
        if mapping:
            self.add_mapping(mapping)

    def __contains__(self, name: object) -> bool:
        return name in self.factories

    def __getitem__(self, name: str) -> Callable:
        return self.factories[name]

    def add(self, name: str, factory: Callable) -> None:
        if not name or _ACTION_SEPARATOR in name:
            raise ValueError(f'Invalid factory name {name!r}')

        if name in self.factories:
            raise ValueError(f'Duplicate factory {name}')

        self.factories[name] = factory

    def add_mapping(self, mapping: Mapping[str, Callable]) -> None:
        for name, factory in mapping.items():
            self.add(name, factory)

    def register(self, name: str) -> Callable:
        def wrapper(factory):
            self.add(name, factory)
            return factory

        return wrapper


@dataclass(frozen=True)
class NormalizedRequest:
    method: str
    segments: Tuple[str, ...]
    body: bytes = _NO_DATA_BODY
    # mount path stripped from request path, used for relative locations
    base_path: str = ''

    @property
    def path(self) -> str:
        return _PATH_SEPARATOR + _PATH_SEPARATOR.join(self.segments[1:])


def normalize_request(method: str,
                      request_uri: str,
                      script_name: str = '',
                      body: bytes = _NO_DATA_BODY) -> NormalizedRequest:
    path = unquote(request_uri.split(_QUERY_SEPARATOR, 1)[0]).rstrip(_PATH_SEPARATOR)
    path_segments = _split_route_path(path) if path else []
    script_segments = _split_route_path(script_name) if script_name else []

    prefix_length = 0
    for path_segment, script_segment in zip(path_segments, script_segments):
        if path_segment.lower() != script_segment.lower():
            break
        prefix_length += 1

    base_path = ''.join(_PATH_SEPARATOR + quote(s) for s in path_segments[:prefix_length])
    method = method.upper()
    return NormalizedRequest(method, (method, *path_segments[prefix_length:]), body, base_path)


def resolve_location(location: str, base_path: str) -> str:
    if _FULL_URL_PATTERN.match(location):
        return location

    return base_path + location


class RouteMatch(NamedTuple):
    definition: RouteDefinition
    bindings: Dict[str, str]


class Invoked(NamedTuple):
    result: Any


class Redirected(NamedTuple):
    location: str


class NotFound(NamedTuple):
    path: str
    status: HTTPStatus = HTTPStatus.NOT_FOUND


DispatchOutcome = Union[Invoked, Redirected, NotFound]


def _default_result_handler(config: 'RouterConfig', environ: dict, result) -> Tuple[int, Iterable, dict]:
    status = HTTPStatus.OK if result is not None else HTTPStatus.NO_CONTENT
    headers = {}
    if isinstance(result, tuple):
        # shortcut for returning status code and optional result/headers
        tuple_length = len(result)
        if tuple_length < 1 or tuple_length > 3:
            raise ValueError(f'Invalid result tuple: {result}: supported status[, result[, headers]]')
        status = result[0]
        if not isinstance(status, int):
            raise ValueError(f'Invalid type of status: {status}')
        if tuple_length > 2 and result[2]:
            headers.update(result[2])
        result = result[1] if tuple_length > 1 else None

    if status in _STATUSES_WITHOUT_CONTENT:
        if result is not None:
            raise ValueError(f'Unexpected result {result} for {HTTPStatus(status).phrase} response')

        result = _NO_DATA_RESULT
    elif result is None:
        result = _NO_DATA_RESULT
        headers[_CONTENT_LENGTH_HEADER] = '0'
    elif isinstance(result, (dict, list)) or (is_dataclass(result) and not isinstance(result, type)):
        response = config.json_serializer(result if isinstance(result, (dict, list)) else dataclass_asdict(result))
        headers.setdefault(_CONTENT_TYPE_HEADER, _CONTENT_TYPE_APPLICATION_JSON)
        headers[_CONTENT_LENGTH_HEADER] = str(len(response))
        result = response,
    elif isinstance(result, bytes):
        if _CONTENT_TYPE_HEADER not in headers:
            raise ValueError('Unknown content type for binary result')

        result = result,
        headers[_CONTENT_LENGTH_HEADER] = str(len(result[0]))
    elif isinstance(result, str):
        result = result.encode(),
        headers.setdefault(_CONTENT_TYPE_HEADER, config.default_str_content_type)
        headers[_CONTENT_LENGTH_HEADER] = str(len(result[0]))
    elif not isinstance(result, GeneratorType):
        raise ValueError(f'Unknown result {result}')

    return status, result, headers


def _default_error_handler(config: 'RouterConfig', environ: dict, exc: Exception) -> tuple:
    if not isinstance(exc, HTTPError):
        config.logger.exception('Unhandled exception', exc_info=exc)

        exc = HTTPError(HTTPStatus.INTERNAL_SERVER_ERROR)

    return exc.status, exc.result, exc.headers or {}


def _json_dumps_adapter(obj: Any) -> bytes:
    # always utf-8: https://tools.ietf.org/html/rfc8259#section-8.1
    return json.dumps(obj).encode()


@dataclass
class RouterConfig:
    # fallback when no route matches, relative locations are resolved against mount path
    default_location: str = _PATH_SEPARATOR
    mobile_location: str = '/m'
    mobile_detection: bool = False
    mobile_detector: Optional[Callable[[dict], bool]] = None
    not_found_policy: NotFoundPolicy = NotFoundPolicy.REDIRECT
    # passed to every dependency factory, e.g. shared database connection
    dependency_context: Any = None
    json_serializer: Callable[[Any], bytes] = staticmethod(_json_dumps_adapter)
    result_handler: Callable[['RouterConfig', dict, Any],
                             Tuple[int, Iterable, dict]] = staticmethod(_default_result_handler)
    error_handler: Callable[['RouterConfig', dict, Exception], Any] = staticmethod(_default_error_handler)
    default_str_content_type: str = 'text/plain;charset=utf-8'
    max_content_length: Optional[int] = None
    logger: Union[logging.Logger, logging.LoggerAdapter] = _logger


class Dispatcher:
    """
    Route dispatcher.

    Handler and dependency names are checked on construction, routes should be registered before.
    Routes registered later are checked when invoked.
    """

    def __init__(self,
                 routes: RouteTable,
                 handlers: FactoryRegistry,
                 dependencies: Optional[FactoryRegistry] = None,
                 config: Optional[RouterConfig] = None) -> None:
        self.routes = routes
        self.handlers = handlers
        self.dependencies = FactoryRegistry() if dependencies is None else dependencies
        self.config = config or RouterConfig()
        self.check_references()

    def check_references(self) -> None:
        for definition in self.routes:
            route_path = definition.pattern.route_path
            if definition.handler_name not in self.handlers:
                raise ValueError(f'{route_path}: unknown handler {definition.handler_name}')

            missing = [name for name in definition.dependencies if name not in self.dependencies]
            if missing:
                raise ValueError(f'{route_path}: unknown dependencies {", ".join(missing)}')

    def match(self, request: NormalizedRequest) -> Optional[RouteMatch]:
        segments = request.segments
        for definition in self.routes:
            bindings = definition.pattern.match(segments)
            if bindings is not None:
                return RouteMatch(definition, bindings)

        return None

    def dispatch(self,
                 request: NormalizedRequest,
                 is_mobile: Union[bool, Callable[[], bool]] = False) -> DispatchOutcome:
        """
        Dispatch request to first matching route.

        Exceptions raised by handler are not handled.
        """
        route_match = self.match(request)
        if route_match is None:
            return self.default_outcome(request)

        definition, bindings = route_match
        location = self.device_redirect(definition, request, is_mobile)
        if location is not None:
            self.config.logger.info('%s %s redirected to %s', request.method, request.path, location)
            return Redirected(location)

        self.config.logger.debug('%s %s matched %s', request.method, request.path, definition.pattern.route_path)
        return Invoked(self.invoke(definition, bindings, request.body))

    def invoke(self, definition: RouteDefinition, bindings: Dict[str, str], body: bytes) -> Any:
        route_path = definition.pattern.route_path
        try:
            factory = self.handlers[definition.handler_name]
            dependency_factories = [self.dependencies[name] for name in definition.dependencies]
        except KeyError as e:
            raise LookupError(f'{route_path}: unknown handler or dependency {e.args[0]}') from None

        context = self.config.dependency_context
        return definition.invoke(factory, [f(context) for f in dependency_factories], bindings, body)

    def device_redirect(self,
                        definition: RouteDefinition,
                        request: NormalizedRequest,
                        is_mobile: Union[bool, Callable[[], bool]]) -> Optional[str]:
        device = definition.device
        if device is DevicePolicy.MOBILE:
            # raw request segments are forwarded re-quoted, not the decoded variables
            path = ''.join(_PATH_SEPARATOR + quote(s) for s in request.segments[1:])
            return resolve_location(self.config.mobile_location, request.base_path) + path

        if device is DevicePolicy.AUTO and (is_mobile() if callable(is_mobile) else is_mobile):
            return resolve_location(self.config.mobile_location, request.base_path)

        return None

    def default_outcome(self, request: NormalizedRequest) -> DispatchOutcome:
        if NotFoundPolicy(self.config.not_found_policy) is NotFoundPolicy.ERROR:
            self.config.logger.debug('%s %s: no route', request.method, request.path)
            return NotFound(request.path)

        location = resolve_location(self.config.default_location, request.base_path)
        self.config.logger.debug('%s %s: no route, redirecting to %s', request.method, request.path, location)
        return Redirected(location)


class Request:
    def __init__(self, config: RouterConfig, environ: dict) -> None:
        self.config = config
        self.environ = environ

    @cached_property
    def method(self) -> str:
        return self.environ[_WSGI_REQUEST_METHOD_HEADER].upper()

    @cached_property
    def content_length(self) -> int:
        try:
            return int(self.environ[_WSGI_CONTENT_LENGTH_HEADER] or 0)
        except KeyError:
            return 0
        except ValueError as e:
            raise HTTPError(HTTPStatus.BAD_REQUEST) from e

    @cached_property
    def body(self) -> bytes:
        content_length = self.content_length
        if content_length < 0:
            raise HTTPError(HTTPStatus.BAD_REQUEST, 'Content-Length contains negative length')

        if content_length == 0:
            return _NO_DATA_BODY

        max_content_length = self.config.max_content_length
        if max_content_length is not None and max_content_length < content_length:
            raise HTTPError(HTTPStatus.REQUEST_ENTITY_TOO_LARGE)

        return self.environ['wsgi.input'].read(content_length)

    @cached_property
    def script_name(self) -> str:
        return self.environ.get(_WSGI_SCRIPT_NAME_HEADER, '')

    @cached_property
    def request_uri(self) -> str:
        # pep-3333: environ strings are bytes decoded as latin-1
        path = self.script_name + self.environ.get(_WSGI_PATH_INFO_HEADER, '')
        return quote(path.encode('latin-1'))

    @cached_property
    def normalized(self) -> NormalizedRequest:
        return normalize_request(self.method, self.request_uri, self.script_name, self.body)


class WsgiApp:
    def __init__(self, dispatcher: Dispatcher) -> None:
        self.dispatcher = dispatcher
        self.config = dispatcher.config
        if self.config.mobile_detection and self.config.mobile_detector is None:
            raise ValueError('Mobile detection enabled without mobile detector')

    def __call__(self, environ: Dict[str, Any], start_response: Callable) -> Iterable:
        try:
            request = Request(self.config, environ)
            outcome = self.dispatcher.dispatch(request.normalized, self.mobile_signal(environ))
            if isinstance(outcome, Redirected):
                result = HTTPStatus.FOUND, None, {_LOCATION_HEADER: outcome.location}
            elif isinstance(outcome, NotFound):
                raise NotFoundError(outcome.path)
            else:
                result = outcome.result
        except Exception as exc:  # noqa: B902
            result = self.config.error_handler(self.config, environ, exc)

        status, result, response_headers = self.config.result_handler(self.config, environ, result)

        if environ[_WSGI_REQUEST_METHOD_HEADER] == 'HEAD':
            # XXX close possible file-like object in result
            result_close = getattr(result, 'close', None)
            if result_close is not None:
                result_close()
            result = _NO_DATA_RESULT

        start_response(_STATUS_ROW_FROM_CODE[status], [*response_headers.items()])
        return result

    def mobile_signal(self, environ: Dict[str, Any]) -> Union[bool, Callable[[], bool]]:
        if not self.config.mobile_detection:
            return False

        # detector is consulted only for routes with auto device policy
        return functools.partial(self.config.mobile_detector, environ)


def _parse_route_pattern(method: str, route_path: str) -> list:
    if not method:
        raise ValueError(f'{route_path}: missing method')

    segments: list = [LiteralSegment(method.upper())]
    trimmed_path = route_path.rstrip(_PATH_SEPARATOR)
    if not trimmed_path:
        return segments

    variable_names = set()
    for path_segment in _split_route_path(trimmed_path):
        if not path_segment:
            raise ValueError(f'{route_path}: missing path segment')

        # segments other than exact {name} are literals
        variable = _VARIABLE_PATTERN.match(path_segment)
        if variable is not None:
            variable_name = variable.group(1)
            if variable_name in variable_names:
                raise ValueError(f'{route_path}: duplicate path variable {variable_name}')

            variable_names.add(variable_name)
            segments.append(VariableSegment(variable_name))
        else:
            segments.append(LiteralSegment(path_segment))

    return segments


def _split_route_path(route_path: str) -> list:
    path_segments = route_path.split(_PATH_SEPARATOR)
    return path_segments[1:] if route_path.startswith(_PATH_SEPARATOR) else path_segments
