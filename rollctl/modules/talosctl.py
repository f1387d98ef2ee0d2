"""Thin adapter over the ``talosctl`` binary.

Resources are read with ``talosctl get <type> -o json``, which prints a
stream of JSON documents (one per resource, not an array). Event lines from
``talosctl events`` are parsed leniently into the payload dataclasses of
:mod:`rollctl.modules.events`; lines that don't look like a known event are
ignored.
"""
import json
import logging
import re
import subprocess
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional

from rollctl.errors import ProbeError

from .events import MachineStatusEvent, PhaseEvent, SequenceEvent, TaskEvent

logger = logging.getLogger("rollctl.talosctl")

MACHINE_STAGES = (
    'BOOTING', 'INSTALLING', 'MAINTENANCE', 'RUNNING', 'REBOOTING',
    'SHUTTING_DOWN', 'RESETTING', 'UPGRADING', 'UNKNOWN',
)

_EVENT_TYPE = re.compile(r'machine\.(?P<type>\w+Event)\b')
_NAMED_ACTION = re.compile(r'(?P<name>[\w./-]+):?\s+(?P<action>START|STOP|NOOP)\b')
_EVENT_ERROR = re.compile(r'error:\s*(?P<error>.+)$')
_STAGE = re.compile(r'\b(?P<stage>' + '|'.join(MACHINE_STAGES) + r')\b')


class MachineClient(ABC):
    """Node management API operations used by :class:`TalosProbe`."""

    @abstractmethod
    def version(self, node: str, timeout: Optional[float] = None) -> str:
        """Return the server version tag reported by ``node``."""

    @abstractmethod
    def upgrade(self, node: str, image: str, preserve: bool) -> None:
        """Start an upgrade to ``image`` without waiting for it."""

    @abstractmethod
    def get_resources(self, node: Optional[str], resource: str) -> List[Dict[str, Any]]:
        """List resources of one type as decoded JSON documents."""

    @abstractmethod
    def read(self, node: str, path: str) -> str:
        """Read a file from the node."""

    @abstractmethod
    def watch_events(self, node: str, tail: int = -1) -> Iterator[Any]:
        """Yield decoded event payloads until the stream ends.

        ``tail`` is passed to ``talosctl events --tail``; ``-1`` replays the
        node's whole buffered history before following new events.

        Closing the generator must release the underlying stream.
        """


def parse_json_stream(text: str) -> List[Dict[str, Any]]:
    """Decode concatenated JSON documents."""
    decoder = json.JSONDecoder()
    docs = []
    idx = 0
    text = text.strip()
    while idx < len(text):
        doc, end = decoder.raw_decode(text, idx)
        docs.append(doc)
        idx = end
        while idx < len(text) and text[idx].isspace():
            idx += 1
    return docs


def parse_version_output(output: str) -> str:
    """Return the ``Tag`` of the Server section of ``talosctl version``."""
    in_server = False
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith('Server:'):
            in_server = True
            continue
        if in_server and stripped.startswith('Tag:'):
            return stripped.split(':', 1)[1].strip()
    raise ValueError("no server version in output")


def parse_event_line(line: str) -> Optional[Any]:
    """Decode one line of ``talosctl events`` output into a payload."""
    match = _EVENT_TYPE.search(line)
    if not match:
        return None
    kind = match.group('type')
    message = line[match.end():]

    if kind == 'MachineStatusEvent':
        stage = _STAGE.search(message)
        return MachineStatusEvent(stage=stage.group('stage')) if stage else None

    named = _NAMED_ACTION.search(message)
    if not named:
        return None
    name, action = named.group('name'), named.group('action')

    if kind == 'SequenceEvent':
        error = _EVENT_ERROR.search(message)
        return SequenceEvent(
            sequence=name,
            action=action,
            error=error.group('error').strip() if error else None,
        )
    if kind == 'PhaseEvent':
        return PhaseEvent(phase=name, action=action)
    if kind == 'TaskEvent':
        return TaskEvent(task=name, action=action)
    return None


class TalosctlClient(MachineClient):
    """``MachineClient`` that shells out to ``talosctl``."""

    def __init__(self, binary: str = 'talosctl', timeout: float = 30.0):
        self.binary = binary
        self.timeout = timeout

    def _command(self, node: Optional[str], args: List[str]) -> List[str]:
        cmd = [self.binary]
        if node:
            cmd.extend(['--nodes', node])
        return cmd + args

    def _run(self, node: Optional[str], args: List[str], timeout: Optional[float] = None) -> str:
        cmd = self._command(node, args)
        logger.debug("Running: %s", ' '.join(cmd))
        try:
            result = subprocess.run(
                cmd,
                check=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout or self.timeout,
            )
        except FileNotFoundError as e:
            raise ProbeError(node or '-', f"{self.binary} not found") from e
        except subprocess.TimeoutExpired as e:
            raise ProbeError(node or '-', f"'{' '.join(args)}' timed out") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or '').strip()
            raise ProbeError(node or '-', stderr or f"'{' '.join(args)}' exited with {e.returncode}") from e
        return result.stdout

    def version(self, node: str, timeout: Optional[float] = None) -> str:
        output = self._run(node, ['version'], timeout=timeout)
        try:
            return parse_version_output(output)
        except ValueError as e:
            raise ProbeError(node, str(e)) from e

    def upgrade(self, node: str, image: str, preserve: bool) -> None:
        self._run(node, [
            'upgrade',
            '--image', image,
            f'--preserve={str(preserve).lower()}',
            '--wait=false',
        ])

    def get_resources(self, node: Optional[str], resource: str) -> List[Dict[str, Any]]:
        output = self._run(node, ['get', resource, '-o', 'json'])
        try:
            return parse_json_stream(output)
        except ValueError as e:
            raise ProbeError(node or '-', f"invalid {resource} output: {e}") from e

    def read(self, node: str, path: str) -> str:
        return self._run(node, ['read', path])

    def watch_events(self, node: str, tail: int = -1) -> Iterator[Any]:
        cmd = self._command(node, ['events', '--tail', str(tail)])
        logger.debug("Streaming: %s", ' '.join(cmd))
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,  # Line buffered
            )
        except FileNotFoundError as e:
            raise ProbeError(node, f"{self.binary} not found") from e

        try:
            last_other = ''
            for line in process.stdout:
                payload = parse_event_line(line)
                if payload is not None:
                    yield payload
                elif line.strip():
                    last_other = line.strip()
            returncode = process.wait()
            message = f"event stream closed (exit {returncode})"
            if returncode != 0 and last_other:
                message = f"{message}: {last_other}"
            raise ProbeError(node, message)
        finally:
            if process.poll() is None:
                process.terminate()
