"""Wizard controller.

The controller owns the wizard state and its ``InitData``. Presenters send
intents (``transition``, ``start_scan``, ``generate``); long operations run
on worker threads and report back through a message queue that the UI
thread drains with ``pump``. Every state change happens on the thread that
calls the controller.
"""
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from ...config import Config
from ...errors import Cancelled, InvalidTransition, TalmError
from ..scanner import NetworkScanner, ScanCancelled, filter_and_sort_nodes
from .models import TRANSITIONS, InitData, WizardState, is_allowed
from .validators import validate_network_cidr

logger = logging.getLogger("talm.wizard")
if Config.DEBUG_TUI:
    logger.setLevel(logging.DEBUG)


@dataclass
class Message:
    """Update posted from a worker thread to the UI thread."""
    kind: str  # progress, scan_done, scan_failed
    payload: Any = None


class WizardController:
    """Validates intents against the transition table and tracks the current state."""

    def __init__(
        self,
        data: Optional[InitData] = None,
        state: WizardState = WizardState.PRESET,
        observer: Optional[logging.Logger] = None,
    ):
        self.data = data or InitData()
        self._state = state
        self.log = observer or logger
        self.messages: "queue.Queue[Message]" = queue.Queue()
        self.progress = 0
        self.error: Optional[TalmError] = None
        self.scan_origin: Optional[WizardState] = None
        self.cancel_scan: Optional[threading.Event] = None
        self._scan_thread: Optional[threading.Thread] = None

    @property
    def state(self) -> WizardState:
        return self._state

    def allowed(self) -> List[WizardState]:
        return sorted(TRANSITIONS.get(self._state, ()), key=lambda s: s.value)

    def transition(self, target: WizardState) -> None:
        """Move to ``target``.

        Raises:
            InvalidTransition: when the table does not allow the move; the state is left unchanged
        """
        source = self._state
        self.log.debug(f"Attempting transition {source} -> {target}")
        if not is_allowed(source, target):
            self.log.debug(f"Transition forbidden: {source} -> {target}")
            raise InvalidTransition(
                f"invalid transition {source} -> {target}",
                details=f"allowed from {source}: {', '.join(s.value for s in self.allowed()) or 'none'}",
                path=f"{source}->{target}",
            )
        if target == WizardState.SCANNING:
            self.scan_origin = source
        self._state = target
        self.log.debug(f"Transition completed, new state: {target}")

    def fail(self, error: TalmError) -> WizardState:
        """Localize a failure of the current step and return the state to show it in.

        A failed generate goes back to confirmation; a failed scan goes back
        to the scan step it came from.
        """
        self.error = error
        self.log.debug(f"Step {self._state} failed: {error}")
        if self._state == WizardState.GENERATE:
            self._state = WizardState.CONFIRM
        elif self._state == WizardState.SCANNING:
            if self.scan_origin == WizardState.COZYSTACK_SCAN or self.data.preset == "cozystack":
                self._state = WizardState.COZYSTACK_SCAN
            else:
                self._state = WizardState.ADD_NODE_SCAN
        return self._state

    def clear_error(self) -> None:
        self.error = None

    # Scanning

    def start_scan(self, scanner: NetworkScanner, cidr: Optional[str] = None) -> threading.Thread:
        """Enter ``Scanning`` and scan ``cidr`` on a worker thread."""
        cidr = cidr if cidr is not None else self.data.network_to_scan
        validate_network_cidr(cidr)
        self.transition(WizardState.SCANNING)
        self.data.network_to_scan = cidr
        self.progress = 0
        self.cancel_scan = threading.Event()
        cancel = self.cancel_scan

        def worker() -> None:
            try:
                nodes = scanner.scan(cidr, progress=lambda p: self.messages.put(Message("progress", p)), cancel=cancel)
            except TalmError as e:
                self.messages.put(Message("scan_failed", e))
                return
            self.messages.put(Message("scan_done", nodes))

        self._scan_thread = threading.Thread(target=worker, name="talm-wizard-scan", daemon=True)
        self._scan_thread.start()
        return self._scan_thread

    def stop_scan(self) -> None:
        if self.cancel_scan is not None:
            self.cancel_scan.set()

    def pump(self, block: bool = False, timeout: Optional[float] = None) -> List[Message]:
        """Apply queued worker messages on the calling thread."""
        handled = []
        while True:
            try:
                message = self.messages.get(block=block and not handled, timeout=timeout)
            except queue.Empty:
                return handled
            handled.append(message)
            self._handle(message)

    def _handle(self, message: Message) -> None:
        if message.kind == "progress":
            self.progress = max(self.progress, int(message.payload))
        elif message.kind == "scan_done":
            self.progress = 100
            self.data.discovered_nodes = filter_and_sort_nodes(message.payload)
            self.transition(WizardState.NODE_SELECT)
        elif message.kind == "scan_failed":
            error = message.payload
            if isinstance(error, ScanCancelled):
                self.data.discovered_nodes = filter_and_sort_nodes(error.nodes)
                self.transition(WizardState.ENDPOINT)
            elif isinstance(error, Cancelled):
                self.transition(WizardState.ENDPOINT)
            else:
                self.fail(error)

    def wait_scan(self, timeout: Optional[float] = None) -> None:
        """Block until the running scan reports its result."""
        while self._state == WizardState.SCANNING:
            if not self.pump(block=True, timeout=timeout):
                return

    # Generation

    def generate(self, action: Callable[[InitData], Any]) -> bool:
        """Run ``action`` from ``Confirm``; True when the wizard reached ``Done``."""
        self.transition(WizardState.GENERATE)
        try:
            action(self.data)
        except TalmError as e:
            self.fail(e)
            return False
        self.transition(WizardState.DONE)
        return True
