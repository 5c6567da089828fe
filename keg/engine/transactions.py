# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Transaction Logger

Single responsibility: Journal installer transactions (append-only JSONL)

A transaction is appended once when it starts and again on every status
change. Readers fold the log by id: the last line for an id is its current
state. A transaction whose last state is pending or in_progress was
interrupted (process killed, power loss) before it could record an outcome.
"""

import json
import logging
import threading
import uuid
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from keg.models.package_models import (
    TransactionOperation,
    TransactionRecord,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

_OPEN_STATES = (TransactionStatus.PENDING.value, TransactionStatus.IN_PROGRESS.value)


class TransactionLogger:
    """Append-only journal of install and uninstall transactions"""

    def __init__(self, log_file: Path):
        """
        Args:
            log_file: Path to transactions.jsonl (created with its parent)
        """
        self.log_file = Path(log_file)
        self._lock = threading.Lock()

        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        self.log_file.touch(exist_ok=True)

    def create_transaction(
        self,
        operation: TransactionOperation,
        packages: Sequence[str]
    ) -> TransactionRecord:
        """New pending record; nothing is written until ``log``."""
        return TransactionRecord(
            id=f"txn-{uuid.uuid4().hex[:12]}",
            operation=operation,
            packages=list(packages),
            status=TransactionStatus.PENDING,
            started_at=datetime.now(UTC)
        )

    def log(self, transaction: TransactionRecord):
        """Append the current state of ``transaction``."""
        line = json.dumps(transaction.to_dict())
        with self._lock:
            with open(self.log_file, "a") as f:
                f.write(line + "\n")

    def finish(
        self,
        transaction: TransactionRecord,
        status: TransactionStatus,
        error: Optional[str] = None,
        rolled_back: bool = False
    ) -> TransactionRecord:
        """
        Stamp the outcome on ``transaction`` and append it.

        Returns:
            The same record, updated
        """
        transaction.status = status
        transaction.completed_at = datetime.now(UTC)
        transaction.error = error
        transaction.rolled_back = rolled_back
        self.log(transaction)
        return transaction

    # =========================================================================
    # QUERIES
    # =========================================================================

    def _entries(self) -> List[Dict[str, Any]]:
        entries = []
        with self._lock:
            with open(self.log_file, "r") as f:
                lines = f.readlines()
        for number, line in enumerate(lines, 1):
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError as e:
                # A crash mid-append leaves a torn last line
                logger.error(f"Skipping unreadable line {number} of {self.log_file}: {e}")
        return entries

    def _states(self) -> Dict[str, Dict[str, Any]]:
        """Latest state per transaction id, in order of first appearance."""
        states: Dict[str, Dict[str, Any]] = {}
        for entry in self._entries():
            txn_id = entry.get("id")
            if txn_id:
                states[txn_id] = entry
        return states

    def list_transactions(self, limit: int = 50) -> List[Dict[str, Any]]:
        """
        Recent journal lines, most recent first.

        Every status change is its own line, so one transaction can appear
        more than once.
        """
        return list(reversed(self._entries()[-limit:]))

    def get_transaction(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        """Current state of a transaction, or None if unknown."""
        return self._states().get(transaction_id)

    def history(self, package: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Current state of each transaction that touched ``package``, newest first."""
        touched = [s for s in self._states().values() if package in s.get("packages", [])]
        return list(reversed(touched))[:limit]

    def incomplete(self) -> List[Dict[str, Any]]:
        """Transactions that never recorded an outcome."""
        return [s for s in self._states().values() if s.get("status") in _OPEN_STATES]
