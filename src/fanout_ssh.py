#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
fanout_ssh.py

Runs a list of shell commands on a list of remote hosts over SSH. Each host's commands
run in order on one connection, hosts run concurrently on a bounded thread pool, and
results are printed to the console and optionally appended to a log file.

Connections are tried with a modern algorithm profile first and retried once with a
legacy profile for older SSH servers. Hosts without a key file or configured password
are prompted for one before any connection is made.

Requires:
    Python 3.9+
    pyyaml
    paramiko
    requests

Example:
    python fanout_ssh.py --file servers.yaml --log results.log --host web01
"""

import os
import io
import sys
import signal
import argparse
import getpass
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import concurrent.futures

try:
    import yaml
except ImportError:
    print("Please install PyYAML (pip install pyyaml).")
    sys.exit(1)

try:
    import requests
except ImportError:
    print("Please install requests (pip install requests).")
    sys.exit(1)

try:
    import paramiko
except ImportError:
    print("Please install paramiko (pip install paramiko).")
    sys.exit(1)

PROGRAM_NAME = "fanout_ssh"
DEFAULT_CONFIG_FILE = "servers.yaml"
DEFAULT_PORT = "22"
DEFAULT_THREADS = 10
DEFAULT_TIMEOUT = 300
DEFAULT_HOST_KEYS = "warn"
CONNECT_TIMEOUT = 30
POLL_INTERVAL = 0.1
SUDO_STDIN_MARKER = "sudo -S"

ENV_CONFIG = "FANOUT_SSH_CONFIG"
ENV_LOG = "FANOUT_SSH_LOG"
ENV_HOST = "FANOUT_SSH_HOST"
ENV_THREADS = "FANOUT_SSH_THREADS"
ENV_TIMEOUT = "FANOUT_SSH_TIMEOUT"
ENV_HOST_KEYS = "FANOUT_SSH_HOST_KEYS"

# You can adjust or remove these ANSI escapes if you prefer uncoloured output
GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
BLUE = "\033[94m"
RESET = "\033[0m"

CHECK_EMOJI = "✅"
ERROR_EMOJI = "❌"
WARNING_EMOJI = "⚠️"


class FanoutError(Exception):
    """Base class for every error raised by this script."""


class ConfigError(FanoutError, ValueError):
    """The configuration could not be loaded or is invalid. Fatal for the run."""


class KeyReadError(FanoutError):
    """A host's private key file could not be read."""


class KeyParseError(FanoutError):
    """A host's private key file is not a key paramiko understands."""


class PasswordReadError(FanoutError):
    """The interactive password prompt failed."""


class HostConnectionError(FanoutError):
    """Both algorithm profiles failed to connect to a host."""

    def __init__(self, host: str, cause: BaseException) -> None:
        super().__init__(f"connection failed to {host}: {cause}")
        self.host = host
        self.cause = cause


class SessionError(FanoutError):
    """A session channel could not be opened for a single command."""


class CommandExecutionError(FanoutError):
    """A command exited non-zero, timed out, or lost its connection."""


class HostRecord:
    """Connection parameters and command batch for one target machine."""

    def __init__(
        self,
        address: str,
        username: str,
        commands: Sequence[str],
        port: str = "",
        password: str = "",
        key_file: str = "",
    ) -> None:
        """
        Initializes a HostRecord.

        Args:
            address: Hostname or IP address.
            username: Remote login name.
            commands: Commands to run, in order.
            port: SSH port as a string. Empty means the default port.
            password: Login password. Also fed to 'sudo -S' commands.
            key_file: Path to a private key file. Takes precedence over the password.
        """
        self.address = address
        self.username = username
        self.commands = tuple(commands)
        self.port = port
        self.password = password
        self.key_file = key_file

    def port_or_default(self) -> str:
        return self.port or DEFAULT_PORT

    def target(self) -> str:
        return f"{self.address}:{self.port_or_default()}"

    def __repr__(self) -> str:
        return f"HostRecord({self.username}@{self.target()}, {len(self.commands)} commands)"


class AuthMethod:
    """A resolved credential for one host. Use KeyAuth or PasswordAuth."""

    kind = ""

    def connect_kwargs(self) -> Dict[str, object]:
        raise NotImplementedError


class KeyAuth(AuthMethod):
    """Authenticates with a parsed private key."""

    kind = "key"

    def __init__(self, signer: "paramiko.PKey") -> None:
        self.signer = signer

    def connect_kwargs(self) -> Dict[str, object]:
        return {"pkey": self.signer}


class PasswordAuth(AuthMethod):
    """Authenticates with a password, either configured or typed at the prompt."""

    kind = "password"

    def __init__(self, secret: str) -> None:
        self.secret = secret

    def connect_kwargs(self) -> Dict[str, object]:
        return {"password": self.secret}


class AlgorithmProfile:
    """A named set of ciphers and key exchanges offered during negotiation."""

    def __init__(
        self,
        name: str,
        ciphers: Sequence[str],
        kex: Sequence[str],
        disabled_key_types: Sequence[str] = (),
    ) -> None:
        self.name = name
        self.ciphers = tuple(ciphers)
        self.kex = tuple(kex)
        self.disabled_key_types = tuple(disabled_key_types)


MODERN_PROFILE = AlgorithmProfile(
    name="modern",
    ciphers=("aes128-ctr", "aes192-ctr", "aes256-ctr"),
    kex=(
        "curve25519-sha256",
        "curve25519-sha256@libssh.org",
        "ecdh-sha2-nistp384",
        "diffie-hellman-group14-sha256",
    ),
    disabled_key_types=("ssh-dss",),
)

# Older appliances only speak CBC ciphers, SHA-1 Diffie-Hellman and DSA host keys
LEGACY_PROFILE = AlgorithmProfile(
    name="legacy",
    ciphers=("aes128-cbc", "aes256-cbc", "aes128-ctr", "aes256-ctr"),
    kex=("diffie-hellman-group1-sha1", "diffie-hellman-group14-sha1"),
)

# paramiko's Transport lists the algorithms it offers, per disabled_algorithms category
_OFFERED_ALGORITHMS = {
    "ciphers": "_preferred_ciphers",
    "kex": "_preferred_kex",
}

HOST_KEY_POLICIES = {
    "reject": paramiko.RejectPolicy,
    "warn": paramiko.WarningPolicy,
    "auto-add": paramiko.AutoAddPolicy,
}


class CommandOutcome:
    """Result of one command on one host."""

    def __init__(
        self,
        host: str,
        command: str,
        output: bytes,
        success: bool,
        exit_code: Optional[int] = None,
        error: str = "",
    ) -> None:
        """
        Initializes a CommandOutcome.

        Args:
            host: Address of the host the command ran on.
            command: The command string as configured.
            output: Combined stdout and stderr bytes.
            success: True if the command exited with status 0.
            exit_code: Remote exit status, or None if it never arrived.
            error: Description of the failure, empty on success.
        """
        self.host = host
        self.command = command
        self.output = output
        self.success = success
        self.exit_code = exit_code
        self.error = error

    @property
    def text(self) -> str:
        return self.output.decode("utf-8", errors="ignore")


class HostResult:
    """Everything that happened on one host during a run."""

    def __init__(self, host: str) -> None:
        self.host = host
        self.connected = False
        self.error = ""
        self.outcomes: List[CommandOutcome] = []
        self.skipped: List[str] = []

    @property
    def failed_commands(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)


# Each line goes out in one write so concurrent hosts never splice lines
def log_info(message: str) -> None:
    print(f"{BLUE}{message}{RESET}\n", end="")


def log_warning(message: str) -> None:
    print(f"{YELLOW}{WARNING_EMOJI} {message}{RESET}\n", end="")


def log_error(context: str, ex: BaseException) -> None:
    print(f"{RED}{ERROR_EMOJI} [ERROR] {context}: {ex}{RESET}\n", end="")


def load_yaml_config(config_source: str) -> Dict[str, object]:
    """Loads and parses the YAML configuration from a file path or an HTTPS URL.

    Args:
        config_source: A local filesystem path or an HTTPS URL.

    Returns:
        A dictionary representing the parsed YAML configuration.

    Raises:
        ConfigError: If the source is a plain HTTP URL, cannot be read, or is not
            a YAML mapping.
    """
    if config_source.startswith("http://"):
        raise ConfigError("Configuration via HTTP (non-SSL) is not permitted.")
    try:
        if config_source.startswith("https://"):
            resp = requests.get(config_source, timeout=10)
            resp.raise_for_status()
            data = yaml.safe_load(resp.text)
        else:
            expanded_path = os.path.expanduser(config_source)
            if not os.path.isfile(expanded_path):
                raise ConfigError(
                    f"Cannot open configuration file: {expanded_path}")
            with open(expanded_path, "r", encoding="utf-8") as file_handle:
                data = yaml.safe_load(file_handle)
    except (OSError, requests.RequestException, yaml.YAMLError) as ex:
        raise ConfigError(f"Cannot load configuration: {ex}") from ex

    if not isinstance(data, dict):
        raise ConfigError("No valid data in config file/URL.")
    return data


def build_hosts(server_section: object) -> List[HostRecord]:
    """Creates HostRecord objects from the 'servers' list in the YAML config.

    Args:
        server_section: The value of the 'servers' key.

    Returns:
        A list of HostRecord objects in configuration order.

    Raises:
        ConfigError: If the section is not a list or an entry is incomplete.
    """
    if not isinstance(server_section, list) or not server_section:
        raise ConfigError("Configuration must contain a non-empty 'servers' list.")

    hosts = []
    for index, item in enumerate(server_section):
        if not isinstance(item, dict):
            raise ConfigError(f"Invalid server configuration at index {index}.")

        address = str(item.get("host") or "").strip()
        username = str(item.get("username") or "").strip()
        commands = item.get("commands") or []
        if not address or not username or not isinstance(commands, list) or not commands:
            raise ConfigError(
                f"Invalid server configuration at index {index}: missing required fields")
        if not all(isinstance(cmd, str) and cmd.strip() for cmd in commands):
            raise ConfigError(
                f"Invalid server configuration at index {index}: commands must be strings")

        port = item.get("port")
        port = "" if port is None else str(port).strip()
        if port and not port.isdigit():
            raise ConfigError(
                f"Invalid server configuration at index {index}: bad port '{port}'")

        key_file = str(item.get("key_file") or "")
        hosts.append(
            HostRecord(
                address=address,
                username=username,
                commands=commands,
                port=port,
                password=str(item.get("password") or ""),
                key_file=os.path.expanduser(key_file) if key_file else "",
            )
        )
    return hosts


def filter_hosts(hosts: List[HostRecord], host_filter: str) -> List[HostRecord]:
    """Keeps only the hosts whose address equals host_filter (all of them if empty)."""
    if not host_filter:
        return list(hosts)
    filtered = [h for h in hosts if h.address == host_filter]
    if not filtered:
        raise ConfigError(f"No servers matching filter '{host_filter}'")
    return filtered


def _key_classes() -> Tuple[type, ...]:
    # DSSKey is gone from recent paramiko releases
    names = ("RSAKey", "Ed25519Key", "ECDSAKey", "DSSKey")
    return tuple(getattr(paramiko, n) for n in names if hasattr(paramiko, n))


def parse_private_key(key_text: str, source: str) -> "paramiko.PKey":
    """Parses private key text with each paramiko key class in turn.

    Raises:
        KeyParseError: If no key class accepts the text.
    """
    errors = []
    for pk_class in _key_classes():
        try:
            return pk_class.from_private_key(io.StringIO(key_text))
        except (paramiko.SSHException, ValueError, TypeError) as ex:
            errors.append(f"{pk_class.__name__}: {ex}")
    raise KeyParseError(
        f"All key parsers failed for {source}. Possibly unsupported key format "
        f"({'; '.join(errors)})")


def resolve_credentials(
    host: HostRecord,
    prompt: Optional[Callable[[str], str]] = None,
) -> AuthMethod:
    """Produces the authentication method for a host.

    A key file wins over any password. Without a key file the configured password is
    used, and if there is none the user is prompted once on the terminal.

    Args:
        host: The host to authenticate against.
        prompt: Reads one line without echo. Defaults to getpass.getpass.

    Returns:
        A KeyAuth or PasswordAuth.

    Raises:
        KeyReadError: If the key file cannot be read.
        KeyParseError: If the key file is not a supported private key.
        PasswordReadError: If the password prompt fails.
    """
    if host.key_file:
        try:
            with open(host.key_file, "rb") as file_handle:
                raw = file_handle.read()
        except OSError as ex:
            raise KeyReadError(f"failed to read key file {host.key_file}: {ex}") from ex
        try:
            key_text = raw.decode("utf-8")
        except UnicodeDecodeError as ex:
            raise KeyParseError(f"key file {host.key_file} is not text: {ex}") from ex
        return KeyAuth(parse_private_key(key_text, host.key_file))

    if host.password:
        return PasswordAuth(host.password)

    reader = prompt or getpass.getpass
    try:
        secret = reader(
            f"{YELLOW}Enter password for {host.username}@{host.address}: {RESET}")
    except (EOFError, OSError) as ex:
        raise PasswordReadError(f"failed to read password: {ex}") from ex
    return PasswordAuth(secret)


def secret_for(host: HostRecord, auth: AuthMethod) -> str:
    """Returns the secret piped into 'sudo -S' commands, or an empty string."""
    if isinstance(auth, PasswordAuth):
        return auth.secret
    return host.password


def disabled_algorithms(profile: AlgorithmProfile) -> Dict[str, List[str]]:
    """Builds paramiko's disabled_algorithms so only the profile's algorithms remain.

    A category where the installed paramiko offers none of the profile's names is
    left at paramiko's defaults.
    """
    wanted = {"ciphers": profile.ciphers, "kex": profile.kex}
    disabled: Dict[str, List[str]] = {}
    for category, attr in _OFFERED_ALGORITHMS.items():
        offered = getattr(paramiko.Transport, attr, ())
        if not any(name in wanted[category] for name in offered):
            log_warning(
                f"paramiko offers none of the {profile.name} {category}; "
                "using its defaults")
            continue
        disabled[category] = [n for n in offered if n not in wanted[category]]
    if profile.disabled_key_types:
        disabled["keys"] = list(profile.disabled_key_types)
    return disabled


def build_host_key_policy(name: str) -> "paramiko.MissingHostKeyPolicy":
    """Returns the paramiko policy for unknown host keys.

    'reject' only trusts known_hosts, 'warn' accepts unknown keys with a warning,
    'auto-add' accepts them silently.
    """
    try:
        return HOST_KEY_POLICIES[name]()
    except KeyError:
        raise ConfigError(
            f"Unknown host key policy '{name}'. "
            f"Choose one of: {', '.join(sorted(HOST_KEY_POLICIES))}") from None


def connect_once(
    host: HostRecord,
    auth: AuthMethod,
    profile: AlgorithmProfile,
    host_keys: str = DEFAULT_HOST_KEYS,
    known_hosts: Optional[str] = None,
    timeout: int = CONNECT_TIMEOUT,
) -> "paramiko.SSHClient":
    """Opens one SSH connection using a single algorithm profile.

    The client is closed before re-raising if the connection fails.
    """
    ssh = paramiko.SSHClient()
    try:
        if host_keys != "auto-add":
            ssh.load_system_host_keys()
        if known_hosts:
            ssh.load_host_keys(os.path.expanduser(known_hosts))
        ssh.set_missing_host_key_policy(build_host_key_policy(host_keys))
        ssh.connect(
            hostname=host.address,
            port=int(host.port_or_default()),
            username=host.username,
            timeout=timeout,
            banner_timeout=timeout,
            auth_timeout=timeout,
            look_for_keys=False,
            allow_agent=False,
            disabled_algorithms=disabled_algorithms(profile),
            **auth.connect_kwargs(),
        )
    except BaseException:
        ssh.close()
        raise
    return ssh


def connect_with_fallback(
    host: HostRecord,
    auth: AuthMethod,
    host_keys: str = DEFAULT_HOST_KEYS,
    known_hosts: Optional[str] = None,
    timeout: int = CONNECT_TIMEOUT,
) -> "paramiko.SSHClient":
    """Connects with the modern profile, retrying once with the legacy profile.

    Raises:
        HostConnectionError: If the legacy attempt fails too. Wraps its exception.
    """
    try:
        return connect_once(host, auth, MODERN_PROFILE, host_keys, known_hosts, timeout)
    except Exception as ex:
        log_warning(f"Retrying {host.address} with legacy algorithms... ({ex})")

    try:
        return connect_once(host, auth, LEGACY_PROFILE, host_keys, known_hosts, timeout)
    except Exception as ex:
        raise HostConnectionError(host.address, ex) from ex


def needs_sudo_secret(command: str) -> bool:
    return SUDO_STDIN_MARKER in command


def _write_secret(chan: "paramiko.Channel", secret: str) -> None:
    # Runs detached. Closing the channel makes a pending sendall fail, which is ignored.
    try:
        chan.sendall((secret + "\n").encode("utf-8"))
    except (OSError, EOFError, paramiko.SSHException):
        pass


def _collect_output(
    chan: "paramiko.Channel",
    output_buffer: List[bytes],
    timeout: int,
) -> int:
    """Reads combined output until the remote process exits and returns its status.

    Raises:
        CommandExecutionError: If the process is still running after timeout seconds.
    """
    start_time = time.time()
    while True:
        if chan.recv_ready():
            output_buffer.append(chan.recv(4096))
        elif chan.exit_status_ready():
            break
        else:
            time.sleep(POLL_INTERVAL)
        if (time.time() - start_time) > timeout:
            output_buffer.append(
                f"(Timed out after {timeout} seconds)\n".encode("utf-8"))
            raise CommandExecutionError(f"timed out after {timeout} seconds")

    # Output can still trail the exit status until the channel sees EOF
    while True:
        data = chan.recv(4096)
        if not data:
            break
        output_buffer.append(data)
    return chan.recv_exit_status()


def run_command(
    ssh: "paramiko.SSHClient",
    host: HostRecord,
    command: str,
    secret: str = "",
    timeout: int = DEFAULT_TIMEOUT,
) -> CommandOutcome:
    """Runs one command in a fresh session and captures its combined output.

    Args:
        ssh: A connected client.
        host: The host the client is connected to.
        command: The command to execute.
        secret: Written to stdin when the command contains 'sudo -S'.
        timeout: Seconds to wait for the command to finish.

    Returns:
        A CommandOutcome. Failed commands are reported, not raised.

    Raises:
        SessionError: If no session channel could be opened.
    """
    transport = ssh.get_transport()
    if transport is None or not transport.is_active():
        raise SessionError(f"no active transport to {host.address}")
    try:
        chan = transport.open_session()
    except (paramiko.SSHException, OSError, EOFError) as ex:
        raise SessionError(f"session failed on {host.address}: {ex}") from ex

    output_buffer: List[bytes] = []
    exit_code: Optional[int] = None
    error = ""
    try:
        chan.settimeout(timeout)
        chan.set_combine_stderr(True)
        chan.exec_command(command)

        if needs_sudo_secret(command) and secret:
            writer = threading.Thread(
                target=_write_secret, args=(chan, secret), daemon=True)
            writer.start()

        exit_code = _collect_output(chan, output_buffer, timeout)
        if exit_code != 0:
            raise CommandExecutionError(f"Process exited with status {exit_code}")
    except CommandExecutionError as ex:
        error = str(ex)
    except (paramiko.SSHException, OSError, EOFError) as ex:
        error = f"execution failed: {ex}"
    finally:
        chan.close()

    return CommandOutcome(
        host=host.address,
        command=command,
        output=b"".join(output_buffer),
        success=not error,
        exit_code=exit_code,
        error=error,
    )


class ResultSink:
    """Prints command outcomes and appends them to an optional log file.

    Output from different hosts may interleave between records but never within one.
    """

    def __init__(self, log_path: Optional[str] = None) -> None:
        self._lock = threading.Lock()
        self._stream: Optional[io.BufferedWriter] = None
        self.outcome_count = 0
        if log_path:
            # A fresh log per run
            self._stream = open(os.path.expanduser(log_path), "wb")

    def __enter__(self) -> "ResultSink":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def record(self, outcome: CommandOutcome) -> None:
        if outcome.success:
            console = f"{GREEN}Output from {outcome.host}:{RESET}\n{outcome.text}"
        else:
            console = (
                f"{RED}{ERROR_EMOJI} [ERROR] Command failed on {outcome.host}: "
                f"{outcome.command}: {outcome.error}{RESET}"
            )
            if outcome.output:
                console += f"\n{outcome.text}"

        with self._lock:
            self.outcome_count += 1
            print(console + "\n", end="")
            if self._stream is None:
                return
            entry = f"[{outcome.host}] {outcome.command}\n".encode("utf-8")
            try:
                self._stream.write(entry + outcome.output + b"\n")
                self._stream.flush()
            except (OSError, ValueError) as ex:
                log_error("Log write failed", ex)

    def close(self) -> None:
        with self._lock:
            if self._stream is None:
                return
            try:
                self._stream.flush()
            finally:
                self._stream.close()
                self._stream = None


def execute_host(
    host: HostRecord,
    auth: AuthMethod,
    sink: ResultSink,
    timeout_sec: int = DEFAULT_TIMEOUT,
    host_keys: str = DEFAULT_HOST_KEYS,
    known_hosts: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
) -> HostResult:
    """Connects to one host and runs its commands in order. Never raises for host errors."""
    result = HostResult(host.address)
    if cancel_event is None:
        cancel_event = threading.Event()

    if cancel_event.is_set():
        log_warning(f"Cancelled connection to {host.address}")
        result.error = "cancelled"
        return result

    log_info(f"Connecting to {host.target()}...")
    try:
        ssh = connect_with_fallback(host, auth, host_keys, known_hosts)
    except HostConnectionError as ex:
        log_error(f"Connection failed to {host.address}", ex.cause)
        result.error = str(ex)
        return result
    result.connected = True

    secret = secret_for(host, auth)
    try:
        log_info(f"Executing commands on {host.address}...")
        for command in host.commands:
            if cancel_event.is_set():
                log_warning(f"Cancelled remaining commands on {host.address}")
                result.skipped.append(command)
                continue
            try:
                outcome = run_command(ssh, host, command, secret, timeout_sec)
            except SessionError as ex:
                log_error(f"Session creation failed on {host.address}", ex)
                result.skipped.append(command)
                continue
            sink.record(outcome)
            result.outcomes.append(outcome)
    finally:
        ssh.close()
    return result


def dispatch_hosts(
    hosts: List[HostRecord],
    sink: ResultSink,
    threads: int = DEFAULT_THREADS,
    timeout_sec: int = DEFAULT_TIMEOUT,
    host_keys: str = DEFAULT_HOST_KEYS,
    known_hosts: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
    prompt: Optional[Callable[[str], str]] = None,
) -> List[HostResult]:
    """Runs every host's commands concurrently and waits for all of them.

    Credentials are resolved one host at a time before anything is dispatched, so
    password prompts never overlap. A host that fails to resolve, connect or run
    never stops the other hosts.

    Args:
        hosts: Hosts to process.
        sink: Receives every command outcome.
        threads: Maximum number of hosts processed at the same time.
        timeout_sec: Per-command timeout in seconds.
        host_keys: Name of the unknown host key policy.
        known_hosts: Extra known_hosts file to load.
        cancel_event: When set, hosts and commands not yet started are skipped.
        prompt: Password reader, see resolve_credentials.

    Returns:
        One HostResult per host, in input order.
    """
    if cancel_event is None:
        cancel_event = threading.Event()
    results: List[Optional[HostResult]] = [None] * len(hosts)
    ready: List[Tuple[int, HostRecord, AuthMethod]] = []

    for index, host in enumerate(hosts):
        if cancel_event.is_set():
            results[index] = HostResult(host.address)
            results[index].error = "cancelled"
            continue
        try:
            auth = resolve_credentials(host, prompt)
        except (KeyReadError, KeyParseError, PasswordReadError) as ex:
            log_error(f"Configuration error for {host.address}", ex)
            failed = HostResult(host.address)
            failed.error = str(ex)
            results[index] = failed
            continue
        ready.append((index, host, auth))

    with concurrent.futures.ThreadPoolExecutor(max_workers=max(threads, 1)) as executor:
        futures = {
            executor.submit(
                execute_host, host, auth, sink, timeout_sec, host_keys,
                known_hosts, cancel_event,
            ): (index, host)
            for index, host, auth in ready
        }
        concurrent.futures.wait(futures)

    for future, (index, host) in futures.items():
        try:
            results[index] = future.result()
        except Exception as ex:
            log_error(f"Unexpected failure on {host.address}", ex)
            failed = HostResult(host.address)
            failed.error = str(ex)
            results[index] = failed

    return [r for r in results if r is not None]


def build_summary(results: List[HostResult]) -> str:
    """One line tallying hosts and commands."""
    hosts_ok = sum(1 for r in results if r.connected)
    commands = sum(len(r.outcomes) for r in results)
    failed = sum(r.failed_commands for r in results)
    skipped = sum(len(r.skipped) for r in results)
    colour = GREEN if hosts_ok == len(results) and not failed and not skipped else YELLOW
    return (
        f"{colour}Hosts: {hosts_ok}/{len(results)} connected, "
        f"commands: {commands - failed} succeeded, {failed} failed, "
        f"{skipped} skipped{RESET}"
    )


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got '{value}'") from None


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROGRAM_NAME,
        description="Run commands on many SSH servers concurrently.",
        epilog="Example: fanout_ssh --file config.yaml --log results.log --host web01",
    )
    parser.add_argument(
        "--file", "-f",
        help=(
            "Path or HTTPS URL to the YAML server configuration. "
            f"Defaults to '{DEFAULT_CONFIG_FILE}' or ${ENV_CONFIG}."
        )
    )
    parser.add_argument(
        "--log", "-l",
        help=f"Path to the output log file, truncated at start. Defaults to ${ENV_LOG}."
    )
    parser.add_argument(
        "--host",
        help="Only run on the server whose host matches exactly."
    )
    parser.add_argument(
        "--threads",
        type=int,
        help=f"Maximum number of servers handled at once. Defaults to {DEFAULT_THREADS}."
    )
    parser.add_argument(
        "--timeout",
        type=int,
        help=f"Timeout in seconds for each command. Defaults to {DEFAULT_TIMEOUT}."
    )
    parser.add_argument(
        "--host-keys",
        choices=sorted(HOST_KEY_POLICIES),
        help=(
            "How to treat unknown host keys. 'auto-add' trusts every server and is "
            f"insecure. Defaults to '{DEFAULT_HOST_KEYS}'."
        )
    )
    parser.add_argument(
        "--known-hosts",
        help="Additional known_hosts file to trust."
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point of the fanout_ssh script. Returns the exit status."""
    args = build_arg_parser().parse_args(argv)

    try:
        config_source = args.file or os.environ.get(ENV_CONFIG, DEFAULT_CONFIG_FILE)
        config_data = load_yaml_config(config_source)
        hosts = build_hosts(config_data.get("servers"))
        hosts = filter_hosts(hosts, args.host or os.environ.get(ENV_HOST, ""))

        threads = args.threads or _env_int(ENV_THREADS, DEFAULT_THREADS)
        timeout_sec = args.timeout or _env_int(ENV_TIMEOUT, DEFAULT_TIMEOUT)
        host_keys = args.host_keys or os.environ.get(ENV_HOST_KEYS, DEFAULT_HOST_KEYS)
        build_host_key_policy(host_keys)
        if args.known_hosts and not os.path.isfile(os.path.expanduser(args.known_hosts)):
            raise ConfigError(f"Cannot open known_hosts file: {args.known_hosts}")
        if host_keys == "auto-add":
            log_warning("Host key verification is disabled (--host-keys auto-add).")

        log_path = args.log or os.environ.get(ENV_LOG)
        try:
            sink = ResultSink(log_path)
        except OSError as ex:
            raise ConfigError(f"Log creation failed: {ex}") from ex
    except ConfigError as ex:
        print(f"{RED}{ERROR_EMOJI} Fatal error: {ex}{RESET}")
        return 1

    cancel_event = threading.Event()

    def on_signal(signum: int, frame: object) -> None:
        print(f"\n{YELLOW}Received interrupt, shutting down...{RESET}")
        cancel_event.set()

    previous_handlers = {}
    if threading.current_thread() is threading.main_thread():
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous_handlers[signum] = signal.signal(signum, on_signal)

    try:
        with sink:
            results = dispatch_hosts(
                hosts,
                sink,
                threads=threads,
                timeout_sec=timeout_sec,
                host_keys=host_keys,
                known_hosts=args.known_hosts,
                cancel_event=cancel_event,
            )
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)

    print(build_summary(results))
    print(f"{GREEN}{CHECK_EMOJI} All operations completed{RESET}")
    return 1 if cancel_event.is_set() else 0


if __name__ == "__main__":
    sys.exit(main())
