# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Rosalia Labs LLC

import logging
import re
import subprocess

logger = logging.getLogger(__name__)

MAC_ADDRESS_RE = re.compile(
    r"[0-9A-Fa-f]{2}(?P<sep>[:-])(?:[0-9A-Fa-f]{2}(?P=sep)){4}[0-9A-Fa-f]{2}"
)

DEFAULT_CHAIN = "FORWARD"


def is_valid_mac_address(mac) -> bool:
    """
    Checks whether a value is a hardware address of the form
    ``00:11:22:33:44:55`` or ``00-11-22-33-44-55``.

    Separators must be consistent within the address; hex digits may be in
    either case. Never raises.
    """
    return isinstance(mac, str) and MAC_ADDRESS_RE.fullmatch(mac) is not None


def normalize_mac_address(mac: str) -> str:
    """
    Returns the canonical upper-case, colon-separated form of a MAC address.

    Raises:
        InvalidMacAddressError: If the value is not a valid MAC address.
    """
    if not is_valid_mac_address(mac):
        raise InvalidMacAddressError(f"Invalid MAC address: {mac!r}")
    return mac.replace("-", ":").upper()


class InvalidMacAddressError(ValueError):
    """Raised when a hardware address fails validation."""


class IptablesError(Exception):
    """Base class for iptables errors."""


class IptablesPermissionError(IptablesError):
    """Raised when an iptables operation requires root privileges."""


class IptablesTimeoutError(IptablesError):
    """Raised when an iptables command does not finish in time."""


class IptablesNotFoundError(IptablesError):
    """Raised when the iptables (or sudo) binary cannot be executed."""


class IptablesCommandError(IptablesError):
    """Raised when iptables exits with a non-zero status."""

    def __init__(self, message: str, returncode: int, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class Iptables:
    """
    Thin wrapper around the `iptables` command-line utility.

    Commands are always passed as argument lists, never through a shell.

    Args:
        binary: Name or path of the `iptables` binary. Defaults to 'iptables'.
        use_sudo: Prefix every command with `sudo`.
        timeout: Seconds to wait for a command before giving up.
    """

    def __init__(
        self, binary: str = "iptables", use_sudo: bool = True, timeout: float = 10.0
    ):
        self.binary = binary
        self.use_sudo = use_sudo
        self.timeout = timeout

    def command(self, *args: str) -> list[str]:
        """Builds the argv for an iptables invocation."""
        prefix = ["sudo"] if self.use_sudo else []
        return [*prefix, self.binary, *args]

    def _run(self, *args: str) -> str:
        """
        Internal helper to run an `iptables` command and capture its output.

        Args:
            *args: Positional arguments to pass to the `iptables` command.

        Returns:
            Standard output from the command.

        Raises:
            IptablesPermissionError: If permission is denied running the command.
            IptablesTimeoutError: If the command exceeds the timeout.
            IptablesNotFoundError: If the binary is missing.
            IptablesCommandError: For any other non-zero exit.
        """
        argv = self.command(*args)
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
            return result.stdout.strip()
        except subprocess.TimeoutExpired as e:
            raise IptablesTimeoutError(
                f"Timed out after {self.timeout}s running: {' '.join(argv)}"
            ) from e
        except FileNotFoundError as e:
            raise IptablesNotFoundError(f"Binary not found: {argv[0]}") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            if "Permission denied" in stderr or "you must be root" in stderr:
                raise IptablesPermissionError(
                    f"Permission denied when running: {' '.join(argv)}"
                ) from e
            raise IptablesCommandError(
                f"Command failed with exit code {e.returncode}: {' '.join(argv)}",
                returncode=e.returncode,
                stderr=stderr,
            ) from e

    def list_rules(self, chain: str = DEFAULT_CHAIN) -> list[str]:
        """
        Lists the rules of a chain in `iptables -S` form.

        Returns:
            One string per rule, e.g. '-A FORWARD -i eth0 -j ACCEPT'.
        """
        output = self._run("-S", chain)
        return [line for line in output.splitlines() if line.strip()]

    def append_rule(self, chain: str, *rule: str) -> None:
        """Appends a rule to the end of a chain."""
        self._run("-A", chain, *rule)

    def delete_rule(self, chain: str, *rule: str) -> None:
        """Deletes the first rule in a chain matching the given rule."""
        self._run("-D", chain, *rule)


def _rule_admits(rule: str, mac: str) -> bool:
    tokens = rule.split()
    try:
        position = tokens.index("--mac-source")
        source = tokens[position + 1]
        target = tokens[tokens.index("-j") + 1]
    except (ValueError, IndexError):
        return False
    # A negated match admits every address except this one
    if position > 0 and tokens[position - 1] == "!":
        return False
    return target == "ACCEPT" and source.replace("-", ":").upper() == mac


class DeviceControl:
    """
    Grants and revokes forwarding for devices by hardware address.

    The kernel rule table is the only record of which devices are admitted.
    Each call re-reads it, so rules changed outside this process are seen
    immediately.

    Args:
        interface: Inbound interface the admit rules are scoped to.
        iptables: Command runner used for every rule query and mutation.
        chain: Chain holding the admit rules.
    """

    def __init__(
        self, interface: str, iptables: Iptables = None, chain: str = DEFAULT_CHAIN
    ):
        self.interface = interface
        self.iptables = iptables if iptables is not None else Iptables()
        self.chain = chain

    def admit_rule_spec(self, mac: str) -> tuple[str, ...]:
        """Returns the rule arguments admitting `mac` on the interface."""
        return (
            "-i",
            self.interface,
            "-m",
            "mac",
            "--mac-source",
            normalize_mac_address(mac),
            "-j",
            "ACCEPT",
        )

    def has_admit_rule(self, mac: str) -> bool:
        """
        Checks the chain for an ACCEPT rule matching `mac`.

        Raises:
            InvalidMacAddressError: If `mac` is malformed.
            IptablesError: If the rule listing fails.
        """
        canonical = normalize_mac_address(mac)
        return any(
            _rule_admits(rule, canonical) for rule in self.iptables.list_rules(self.chain)
        )

    def allow_device(self, mac: str) -> bool:
        """
        Admits a device, inserting at most one rule for it.

        Returns:
            True if a rule was inserted, False if one already existed.
        """
        spec = self.admit_rule_spec(mac)
        try:
            if self.has_admit_rule(mac):
                logger.info(f"Device {mac} already allowed on {self.interface}.")
                return False
            self.iptables.append_rule(self.chain, *spec)
        except IptablesError as e:
            logger.error(f"Failed to allow device {mac}: {e}")
            raise
        logger.info(f"Allowed device {mac} on {self.interface}.")
        return True

    def block_device(self, mac: str) -> None:
        """
        Removes the admit rule for a device.

        No existence check is made first: blocking a device that has no
        admit rule surfaces the IptablesCommandError iptables reports.
        """
        spec = self.admit_rule_spec(mac)
        try:
            self.iptables.delete_rule(self.chain, *spec)
        except IptablesError as e:
            logger.error(f"Failed to block device {mac}: {e}")
            raise
        logger.info(f"Blocked device {mac} on {self.interface}.")

    def get_device_status(self, mac: str) -> bool:
        """
        Reports whether a device is currently admitted.

        Query failures are logged and reported as blocked.
        """
        try:
            return self.has_admit_rule(mac)
        except IptablesError as e:
            logger.error(f"Failed to get device status {mac}: {e}")
            return False
