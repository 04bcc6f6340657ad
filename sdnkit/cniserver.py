"""Private HTTP-over-Unix-socket server that handles pod setup and teardown requests.

The CNI plugin forwards the standard CNI environment and network configuration
as a JSON request over a root-only Unix domain socket. The server turns each
request into a :class:`PodRequest`, hands it to a request function, and returns
that function's result, or the error it raised, to the plugin.
"""

from __future__ import annotations

import base64
import binascii
import enum
import json
import logging
import os
import shutil
import socketserver
import stat
import threading
from dataclasses import dataclass, field
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler
from typing import Callable, Optional, Union
from urllib.parse import urlsplit

log = logging.getLogger(__name__)

# Default directory for runtime files.
CNI_SERVER_RUN_DIR = "/var/run/openshift-sdn/cniserver"
CNI_SERVER_SOCKET_NAME = "socket"
CNI_SERVER_SOCKET_PATH = os.path.join(CNI_SERVER_RUN_DIR, CNI_SERVER_SOCKET_NAME)
CNI_SERVER_CONFIG_FILE_NAME = "config.json"
CNI_SERVER_CONFIG_FILE_PATH = os.path.join(CNI_SERVER_RUN_DIR, CNI_SERVER_CONFIG_FILE_NAME)

_TEXT_PLAIN = "text/plain; charset=utf-8"
_APPLICATION_JSON = "application/json"


class CNICommand(str, enum.Enum):
    """CNI commands the server handles."""

    ADD = "ADD"
    UPDATE = "UPDATE"
    DEL = "DEL"


class CNIRequestError(Exception):
    """Raised when a request from the CNI plugin is malformed or incomplete."""


@dataclass
class Config:
    """Configuration the server hands to the plugin through its config file."""

    mtu: int
    service_network_cidr: str

    def to_json(self) -> bytes:
        """Serialize to the JSON form the plugin reads."""
        return json.dumps(
            {"mtu": self.mtu, "serviceNetworkCIDR": self.service_network_cidr},
            separators=(",", ":"),
        ).encode()

    @classmethod
    def from_json(cls, data: Union[str, bytes]) -> "Config":
        """Parse the JSON form; missing fields take zero values."""
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("config must be a JSON object")
        mtu = obj.get("mtu", 0)
        cidr = obj.get("serviceNetworkCIDR", "")
        if mtu is None:
            mtu = 0
        if cidr is None:
            cidr = ""
        if isinstance(mtu, bool) or not isinstance(mtu, int) or mtu < 0:
            raise ValueError(f"invalid mtu {mtu!r}")
        if not isinstance(cidr, str):
            raise ValueError(f"invalid serviceNetworkCIDR {cidr!r}")
        return cls(mtu=mtu, service_network_cidr=cidr)


@dataclass
class CNIRequest:
    """Request the CNI plugin sends to the server."""

    # CNI environment variables, like CNI_COMMAND and CNI_NETNS.
    env: dict[str, str] = field(default_factory=dict)
    # CNI configuration passed to the plugin on stdin.
    config: bytes = b""
    # Host side of the veth pair (for an ADD command).
    host_veth: str = ""

    def to_json(self) -> bytes:
        """Serialize, leaving out empty fields."""
        obj: dict[str, object] = {}
        if self.env:
            obj["env"] = dict(self.env)
        if self.config:
            obj["config"] = base64.b64encode(self.config).decode("ascii")
        if self.host_veth:
            obj["hostVeth"] = self.host_veth
        return json.dumps(obj, separators=(",", ":")).encode()

    @classmethod
    def from_json(cls, data: Union[str, bytes]) -> "CNIRequest":
        """Parse a request; raises ValueError when it is not well formed."""
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("request must be a JSON object")

        env = obj.get("env") or {}
        if not isinstance(env, dict) or not all(
            isinstance(key, str) and isinstance(value, str) for key, value in env.items()
        ):
            raise ValueError("env must map strings to strings")

        raw_config = obj.get("config") or ""
        if not isinstance(raw_config, str):
            raise ValueError("config must be a base64 string")
        try:
            config = base64.b64decode(raw_config, validate=True)
        except binascii.Error as err:
            raise ValueError(f"invalid base64 config: {err}") from err

        host_veth = obj.get("hostVeth") or ""
        if not isinstance(host_veth, str):
            raise ValueError("hostVeth must be a string")

        return cls(env=dict(env), config=config, host_veth=host_veth)


@dataclass
class PodRequest:
    """Pod operation built from a :class:`CNIRequest`."""

    # A CNICommand, or the raw command string when it is not one the server knows.
    command: Union[CNICommand, str]
    pod_namespace: str
    pod_name: str
    sandbox_id: str
    netns: str
    host_veth: str = ""
    assigned_ip: str = ""


RequestFunc = Callable[[PodRequest], Optional[Union[bytes, str]]]


def read_config(config_path: str) -> Config:
    """Read the server-to-plugin config file at ``config_path``."""
    try:
        with open(config_path, "rb") as handle:
            data = handle.read()
    except FileNotFoundError as err:
        raise FileNotFoundError("OpenShift SDN network process is not (yet?) available") from err
    except OSError as err:
        raise OSError(f"could not read config file {config_path!r}: {err}") from err
    try:
        return Config.from_json(data)
    except ValueError as err:
        raise ValueError(f"could not parse config file {config_path!r}: {err}") from err


def gather_cni_args(env: dict[str, str]) -> dict[str, str]:
    """Split CNI_ARGS (``key=value`` pairs separated by ';') into a dict."""
    if "CNI_ARGS" not in env:
        raise CNIRequestError(f"missing CNI_ARGS: '{env}'")

    args: dict[str, str] = {}
    for arg in env["CNI_ARGS"].split(";"):
        parts = arg.split("=")
        if len(parts) != 2:
            raise CNIRequestError(f"invalid CNI_ARG '{arg}'")
        args[parts[0].strip()] = parts[1].strip()
    return args


def _require(mapping: dict[str, str], key: str, message: str) -> str:
    if key not in mapping:
        raise CNIRequestError(message)
    return mapping[key]


def pod_request_from_json(data: Union[str, bytes]) -> PodRequest:
    """Build a :class:`PodRequest` from the JSON body the plugin posts."""
    try:
        request = CNIRequest.from_json(data)
    except ValueError as err:
        raise CNIRequestError(f"JSON unmarshal error: {err}") from err

    env = request.env
    raw_command = _require(env, "CNI_COMMAND", "unexpected or missing CNI_COMMAND")
    command: Union[CNICommand, str]
    try:
        command = CNICommand(raw_command)
    except ValueError:
        command = raw_command

    sandbox_id = _require(env, "CNI_CONTAINERID", "missing CNI_CONTAINERID")
    netns = _require(env, "CNI_NETNS", "missing CNI_NETNS")

    if not request.host_veth and command == CNICommand.ADD:
        raise CNIRequestError("missing HostVeth")

    args = gather_cni_args(env)
    namespace = _require(args, "K8S_POD_NAMESPACE", "missing K8S_POD_NAMESPACE")
    name = _require(args, "K8S_POD_NAME", "missing K8S_POD_NAME")

    return PodRequest(
        command=command,
        pod_namespace=namespace,
        pod_name=name,
        sandbox_id=sandbox_id,
        netns=netns,
        host_veth=request.host_veth,
    )


class _UnixHTTPServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True

    def __init__(self, path: str, cni_server: "CNIServer") -> None:
        self.cni_server = cni_server
        super().__init__(path, _Handler)


class _Handler(BaseHTTPRequestHandler):
    server: _UnixHTTPServer

    def address_string(self) -> str:
        return "unix"

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        log.debug("cniserver: " + format, *args)

    def _send(self, status: int, body: bytes, content_type: str) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        if content_type == _TEXT_PLAIN:
            self.send_header("X-Content-Type-Options", "nosniff")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body and self.command != "HEAD":
            self.wfile.write(body)

    def _route_ok(self) -> bool:
        return urlsplit(self.path).path == "/"

    def do_POST(self) -> None:
        if not self._route_ok():
            self._send(HTTPStatus.NOT_FOUND, b"404 page not found\n", _TEXT_PLAIN)
            return
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length > 0 else b""
        status, payload, content_type = self.server.cni_server._dispatch(body)
        self._send(status, payload, content_type)

    def _other_method(self) -> None:
        if self._route_ok():
            self._send(HTTPStatus.METHOD_NOT_ALLOWED, b"", _TEXT_PLAIN)
        else:
            self._send(HTTPStatus.NOT_FOUND, b"404 page not found\n", _TEXT_PLAIN)

    do_GET = _other_method
    do_HEAD = _other_method
    do_PUT = _other_method
    do_DELETE = _other_method
    do_PATCH = _other_method


class CNIServer:
    """Serves pod requests over HTTP on a private Unix domain socket in ``rundir``."""

    def __init__(self, rundir: str = CNI_SERVER_RUN_DIR, config: Optional[Config] = None) -> None:
        self.rundir = rundir
        self.config = config if config is not None else Config(mtu=0, service_network_cidr="")
        self._request_func: Optional[RequestFunc] = None
        self._httpd: Optional[_UnixHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def socket_path(self) -> str:
        return os.path.join(self.rundir, CNI_SERVER_SOCKET_NAME)

    @property
    def config_path(self) -> str:
        return os.path.join(self.rundir, CNI_SERVER_CONFIG_FILE_NAME)

    def _prepare_rundir(self) -> None:
        # If the directory exists, make sure it is private and empty.
        try:
            info = os.stat(self.rundir)
        except FileNotFoundError:
            info = None
        except OSError as err:
            raise OSError(f"could not read CNIServer directory: {err}") from err

        if info is not None:
            if stat.S_ISDIR(info.st_mode) and stat.S_IMODE(info.st_mode) == 0o700:
                for path, what in ((self.socket_path, "socket"), (self.config_path, "config")):
                    try:
                        os.remove(path)
                    except FileNotFoundError:
                        pass
                    except OSError as err:
                        raise OSError(f"failed to remove old CNIServer {what}: {err}") from err
            else:
                try:
                    if os.path.islink(self.rundir) or not stat.S_ISDIR(info.st_mode):
                        os.remove(self.rundir)
                    else:
                        shutil.rmtree(self.rundir)
                except OSError as err:
                    raise OSError(f"failed to remove old CNIServer directory: {err}") from err

        try:
            os.makedirs(self.rundir, mode=0o700, exist_ok=True)
        except OSError as err:
            raise OSError(f"failed to create CNIServer directory: {err}") from err

    def _write_config(self) -> None:
        data = self.config.to_json()
        try:
            fd = os.open(self.config_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o444)
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
        except OSError as err:
            raise OSError(f"could not write config file {self.config_path!r}: {err}") from err

    def start(self, request_func: RequestFunc) -> None:
        """Write the config file and begin serving on the socket.

        ``request_func`` is called for every pod request; what it returns is
        sent back as the JSON response, and an exception it raises becomes a
        400 response carrying the exception's message.
        """
        if request_func is None:
            raise ValueError("no pod request handler")
        self._request_func = request_func

        self._prepare_rundir()
        self._write_config()

        # The socket inherits the directory's privacy, so no umask games are needed.
        try:
            httpd = _UnixHTTPServer(self.socket_path, self)
        except OSError as err:
            raise OSError(f"failed to listen on pod info socket: {err}") from err
        try:
            os.chmod(self.socket_path, 0o600)
        except OSError as err:
            httpd.server_close()
            raise OSError(f"failed to set pod info socket mode: {err}") from err

        self._httpd = httpd
        self._thread = threading.Thread(
            target=httpd.serve_forever, name="cniserver", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop serving and close the socket."""
        httpd, thread = self._httpd, self._thread
        self._httpd = None
        self._thread = None
        if httpd is not None:
            httpd.shutdown()
            httpd.server_close()
        if thread is not None:
            thread.join()

    def _dispatch(self, body: bytes) -> tuple[int, bytes, str]:
        try:
            request = pod_request_from_json(body)
        except CNIRequestError as err:
            return HTTPStatus.BAD_REQUEST, f"{err}\n".encode(), _TEXT_PLAIN

        command = request.command.value if isinstance(request.command, CNICommand) else request.command
        log.debug(
            "Waiting for %s result for pod %s/%s",
            command, request.pod_namespace, request.pod_name,
        )
        assert self._request_func is not None
        try:
            result = self._request_func(request)
        except Exception as err:  # the handler's failure is reported to the plugin
            return HTTPStatus.BAD_REQUEST, f"{err}\n".encode(), _TEXT_PLAIN

        if result is None:
            payload = b""
        elif isinstance(result, str):
            payload = result.encode()
        else:
            payload = bytes(result)
        # An empty JSON response means success with no body.
        return HTTPStatus.OK, payload, _APPLICATION_JSON