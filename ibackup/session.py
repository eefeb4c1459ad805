"""Connection to the iRODS server that stores the backups."""

from __future__ import annotations

import json
import socket
import sys
from getpass import getpass
from pathlib import Path
from typing import Optional, Union

import irods.exception
import irods.password_obfuscation
from irods.session import NonAnonymousLoginWithoutPassword, iRODSSession

APP_NAME = "ibackup"
DEFAULT_CONNECTION_TIMEOUT = 25000
NETWORK_CHECK_TIMEOUT = 10.0


class LoginError(AttributeError):
    """When the iRODS environment does not allow a connection to be made."""


class PasswordError(ValueError):
    """When the password is missing, wrong or expired."""


def _load_environment(irods_env: Union[dict, str, Path]) -> tuple[dict, Optional[Path]]:
    env_path = None
    if isinstance(irods_env, (str, Path)):
        env_path = Path(irods_env).expanduser()
        if not env_path.is_file():
            raise FileNotFoundError(f"iRODS environment file '{env_path}' does not exist.")
        with env_path.open("r", encoding="utf-8") as handle:
            irods_env = json.load(handle)
    if not isinstance(irods_env, dict):
        raise TypeError(f"iRODS environment {env_path} should contain a dictionary, "
                        f"not {type(irods_env).__name__}.")
    return dict(irods_env), env_path


def server_reachable(host: Optional[str], port: Optional[int]) -> bool:
    """Check whether a TCP connection to the iRODS server can be opened.

    Raises
    ------
    LoginError:
        If the host or port is not set.

    """
    if host is None or port is None:
        raise LoginError("The iRODS environment needs both 'irods_host' and 'irods_port'.")
    try:
        with socket.create_connection((host, int(port)), timeout=NETWORK_CHECK_TIMEOUT):
            return True
    except OSError:
        return False


class Session:
    """Authenticated connection to an iRODS server.

    The connection is made when the session is created. Without a password the
    password cached by the iRODS client (``~/.irods/.irodsA``) is used, which needs
    the environment to be given as a file.

    Parameters
    ----------
    irods_env:
        Path to an irods_environment.json file, or its contents as a dictionary.
    password, optional
        Password of the iRODS user.

    Raises
    ------
    FileNotFoundError:
        If the environment file does not exist.
    TypeError:
        If the environment is not a dictionary.
    ConnectionError:
        If the server cannot be reached.
    LoginError:
        If the environment is incomplete or not accepted by the server.
    PasswordError:
        If there is no usable password.

    Examples
    --------
    >>> with Session("~/.irods/irods_environment.json") as session:
    >>>     print(session.home)
    /zone/home/user

    """

    def __init__(self, irods_env: Union[dict, str, Path], password: Optional[str] = None):
        self._irods_env, self._env_path = _load_environment(irods_env)
        try:
            self.connection_timeout = int(
                self._irods_env.pop("connection_timeout", DEFAULT_CONNECTION_TIMEOUT))
        except (TypeError, ValueError) as exc:
            raise LoginError("'connection_timeout' in the iRODS environment should be an "
                             "integer.") from exc
        self._password = password
        self.irods_session: Optional[iRODSSession] = None
        self.connect()

    def __enter__(self):
        """Reconnect if the session was closed."""
        if self.irods_session is None:
            self.connect()
        return self

    def __exit__(self, exc_type, exc_value, exc_trace_back):
        """Close the connection."""
        self.close()

    @property
    def home(self) -> str:
        """Home collection of the user, 'irods_home' of the environment if it is set."""
        if "irods_home" in self._irods_env:
            return self._irods_env["irods_home"]
        return f"/{self.irods_session.zone}/home/{self.irods_session.username}"

    def _session_options(self) -> dict:
        options = {"connection_timeout": self.connection_timeout,
                   "application_name": APP_NAME}
        if self._password:
            options.update(self._irods_env)
            options["password"] = self._password
        elif self._env_path is not None:
            options["irods_env_file"] = str(self._env_path)
        else:
            raise PasswordError("A password is needed when the environment is not a file.")
        return options

    def connect(self):
        """Open the connection to the server."""
        host = self._irods_env.get("irods_host")
        port = self._irods_env.get("irods_port")
        if not server_reachable(host, port):
            raise ConnectionError(f"Cannot reach iRODS server {host} on port {port}.")
        options = self._session_options()
        try:
            irods_session = iRODSSession(**options)
            server_version = irods_session.server_version
        except NonAnonymousLoginWithoutPassword as exc:
            raise PasswordError("No cached iRODS password.") from exc
        except Exception as exc:  # pylint: disable=broad-exception-caught
            raise _translate_irods_error(exc) from exc
        if not server_version:
            raise LoginError(f"iRODS server {host} did not report its version.")
        self.irods_session = irods_session

    def close(self):
        """Close the connection, if it is open."""
        if self.irods_session is not None:
            self.irods_session.cleanup()
            self.irods_session = None

    def cache_password(self):
        """Store the password that was used for the next sessions.

        The password is written obfuscated to the iRODS authentication file,
        as the iRODS command line tools do. For PAM authentication the
        negotiated password is stored.
        """
        negotiated = self.irods_session.pam_pw_negotiated
        password = negotiated[0] if negotiated else self._password
        if not password:
            return
        auth_file = Path(self.irods_session.get_irods_password_file())
        auth_file.parent.mkdir(parents=True, exist_ok=True)
        auth_file.write_text(irods.password_obfuscation.encode(password), encoding="utf-8")


def _read_password() -> str:
    if sys.stdin.isatty():
        return getpass("Your iRODS password: ")
    print("Your iRODS password: ")
    return sys.stdin.readline().rstrip()


def interactive_auth(irods_env_path: Union[str, Path], n_tries: int = 3,
                     ask_password: bool = False) -> Session:
    """Connect with the cached password, ask for the password if that fails.

    A password that was asked for is cached for the next session.

    Parameters
    ----------
    irods_env_path:
        Path to the irods_environment.json file.
    n_tries, optional
        Number of times the password is asked for.
    ask_password, optional
        Ask for the password without trying the cached one.

    Raises
    ------
    LoginError:
        If no connection could be made with `n_tries` passwords.

    """
    if not ask_password:
        try:
            return Session(irods_env_path)
        except PasswordError as exc:
            print(f"INFO: {exc}")

    for _ in range(n_tries):
        try:
            session = Session(irods_env_path, password=_read_password())
        except PasswordError as exc:
            print(f"INFO: {exc}")
            continue
        session.cache_password()
        return session
    raise LoginError(f"Could not connect to iRODS after {n_tries} password attempts.")


_PASSWORD_ERRORS = (
    (irods.exception.CAT_INVALID_USER, "Wrong iRODS user name or password."),
    (irods.exception.PAM_AUTH_PASSWORD_FAILED, "Wrong iRODS user name or password."),
    (irods.exception.CAT_PASSWORD_EXPIRED, "The cached iRODS password has expired."),
    (irods.exception.CAT_INVALID_AUTHENTICATION, "The cached iRODS password is wrong."),
)


def _translate_irods_error(exc: Exception) -> Exception:
    for error_class, message in _PASSWORD_ERRORS:
        if isinstance(exc, error_class):
            return PasswordError(message)
    if isinstance(exc, irods.exception.NetworkException) and any(
            str(arg).startswith("Client-Server negotiation failure") for arg in exc.args):
        return LoginError("Client-server negotiation failed, check the host, port and "
                          "irods_client_server_policy in the iRODS environment.")
    if isinstance(exc, TypeError):
        return LoginError(f"The iRODS environment is incomplete: {exc}")
    if isinstance(exc, ValueError):
        return LoginError(f"Unexpected value in the iRODS environment: {exc}")
    return LoginError(f"Cannot create an iRODS session: {exc!r}")
