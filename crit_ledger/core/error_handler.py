#!/usr/bin/env python3
"""
ErrorHandler - Centralized exception handling for the classification engine

Every operation that touches the live tree or the key/value store runs inside
an ErrorContext so a fault degrades (the entry is skipped) instead of
propagating into the host. Repeated errors of the same kind are suppressed
for a window so hot paths like the mutation handler do not flood the log.
"""

import logging
import uuid
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorSeverity(Enum):
    """Error severity levels with clear action mappings"""
    CRITICAL_STOP = "critical_stop"       # Re-raise, the engine cannot continue
    HIGH_DEGRADE = "high_degrade"         # Feature broken, continue degraded
    MEDIUM_ALERT = "medium_alert"         # Operator should know
    LOW_DEBUG = "low_debug"               # Background issue, debug mode only


class ErrorCategory(Enum):
    """Error categories covering every engine component"""
    # Identity & classification
    IDENTITY_RESOLUTION = "identity"          # Binding chain / attribute extraction
    CLASSIFICATION = "classification"         # Roll computation, bonus reads

    # Durable state
    STORE_CORRUPTION = "store_corruption"     # Unreadable persisted history
    PERSISTENCE = "persistence"               # Key/value backend read/write
    RECONCILIATION = "reconciliation"         # Pending verdict disagreed on re-check

    # Live tree
    OBSERVER_ATTACH = "observer_attach"       # Watch target missing
    DISPATCH = "dispatch"                     # Per-node processing
    RESTORATION = "restoration"               # Re-applying stored verdicts

    # Catch-all
    GENERAL = "general"


class ErrorHandler:
    """Centralized error handling to replace scattered try/except blocks"""

    def __init__(self, console=None, debug_mode: bool = False, log_file: Optional[str] = None):
        self.console = console
        self.debug_mode = debug_mode

        # Error tracking
        self.error_counts = defaultdict(int)  # error_key -> count
        self.recent_errors: List[Dict[str, Any]] = []
        self.suppressed_errors = defaultdict(int)
        self.last_error_time: Dict[str, datetime] = {}

        # Alert routing
        self.alert_queue: List[str] = []
        self.critical_alerts: List[str] = []

        self.logger = logging.getLogger("crit_ledger.errors")
        self.logger.setLevel(logging.DEBUG if debug_mode else logging.INFO)

        if log_file and not any(isinstance(h, logging.FileHandler) for h in self.logger.handlers):
            handler = logging.FileHandler(log_file)
            handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(levelname)s - %(message)s'
            ))
            self.logger.addHandler(handler)

    def get_error_by_id(self, error_id: str) -> Optional[Dict[str, Any]]:
        """Find an error record by its ID."""
        for error in self.recent_errors:
            if error.get('error_id') == error_id:
                return error
        return None

    def handle_error(self,
                     error: Exception,
                     category: ErrorCategory,
                     severity: ErrorSeverity,
                     context: str = "",
                     operation: str = "",
                     suppress_duplicate_seconds: float = 60) -> bool:
        """
        Central error handling method

        Args:
            error: The exception that occurred
            category: What type of error this is
            severity: How severe this error is
            context: Additional context about what was happening
            operation: What operation was being performed
            suppress_duplicate_seconds: Suppress similar errors for this long

        Returns:
            bool: True if error was handled and should not propagate, False to re-raise
        """
        error_key = f"{category.value}_{type(error).__name__}"
        current_time = datetime.now()

        self.error_counts[error_key] += 1

        if self._should_suppress_error(error_key, current_time, suppress_duplicate_seconds):
            self.suppressed_errors[error_key] += 1
            return severity != ErrorSeverity.CRITICAL_STOP

        self.last_error_time[error_key] = current_time

        error_message = self._format_error_message(error, category, context, operation)
        self._route_error(error_message, severity)

        self.recent_errors.append({
            'error_id': str(uuid.uuid4()),
            'timestamp': current_time,
            'category': category.value,
            'severity': severity.value,
            'error_type': type(error).__name__,
            'message': str(error),
            'context': context,
            'operation': operation,
        })

        # Keep only recent errors (last 100)
        if len(self.recent_errors) > 100:
            self.recent_errors.pop(0)

        if severity == ErrorSeverity.LOW_DEBUG:
            self.logger.debug(f"{category.value}: {error_message}")
        elif severity == ErrorSeverity.MEDIUM_ALERT:
            self.logger.warning(f"{category.value}: {error_message}", exc_info=self.debug_mode)
        else:
            self.logger.error(f"{category.value}: {error_message}", exc_info=self.debug_mode)

        return severity != ErrorSeverity.CRITICAL_STOP  # Only re-raise critical errors

    def _should_suppress_error(self, error_key: str, current_time: datetime, suppress_seconds: float) -> bool:
        """Check if this error should be suppressed due to recent similar errors"""
        if suppress_seconds <= 0 or error_key not in self.last_error_time:
            return False
        time_since_last = (current_time - self.last_error_time[error_key]).total_seconds()
        return time_since_last < suppress_seconds

    def _format_error_message(self, error: Exception, category: ErrorCategory,
                              context: str, operation: str) -> str:
        """Format error message consistently with all metadata"""
        base_msg = str(error)
        if len(base_msg) > 100:
            base_msg = base_msg[:100] + "..."

        if context:
            base_msg = f"{context}: {base_msg}"
        if operation:
            base_msg = f"During {operation} - {base_msg}"

        error_key = f"{category.value}_{type(error).__name__}"
        count = self.error_counts.get(error_key, 1)
        if count > 1:
            base_msg += f" (#{count})"

        suppressed_count = self.suppressed_errors.get(error_key, 0)
        if suppressed_count > 0:
            base_msg += f" [+{suppressed_count} suppressed]"
            self.suppressed_errors[error_key] = 0  # Reset after showing

        return base_msg

    def _route_error(self, message: str, severity: ErrorSeverity):
        """Route error to the alert queues with rich markup"""
        color_map = {
            ErrorSeverity.CRITICAL_STOP: "red bold",
            ErrorSeverity.HIGH_DEGRADE: "red",
            ErrorSeverity.MEDIUM_ALERT: "yellow",
            ErrorSeverity.LOW_DEBUG: "dim yellow",
        }
        color = color_map.get(severity, "dim")
        formatted_message = f"[{color}]{message}[/{color}]"

        if severity == ErrorSeverity.CRITICAL_STOP:
            self.critical_alerts.append(formatted_message)
            if self.console:
                self.console.print(formatted_message)
        elif severity in [ErrorSeverity.HIGH_DEGRADE, ErrorSeverity.MEDIUM_ALERT]:
            self.alert_queue.append(formatted_message)
        elif severity == ErrorSeverity.LOW_DEBUG and self.debug_mode:
            self.alert_queue.append(formatted_message)

    def get_alerts(self, max_alerts: int = 8, clear_after: bool = True) -> List[str]:
        """Get queued alerts, most recent last"""
        all_alerts = self.critical_alerts + self.alert_queue
        alerts = all_alerts[-max_alerts:]

        if clear_after:
            self.critical_alerts = []
            self.alert_queue = []

        return alerts

    def get_error_summary(self) -> Dict[str, Any]:
        """Get summary of error patterns for debugging"""
        total_errors = sum(self.error_counts.values())
        total_suppressed = sum(self.suppressed_errors.values())

        return {
            'total_errors': total_errors,
            'error_counts_by_type': dict(self.error_counts),
            'recent_error_count': len(self.recent_errors),
            'suppressed_count': total_suppressed,
            'categories_with_errors': sorted(set(e['category'] for e in self.recent_errors)),
            'most_common_errors': sorted(self.error_counts.items(), key=lambda x: x[1], reverse=True)[:5],
        }

    def create_context_manager(self, category: ErrorCategory, severity: ErrorSeverity,
                               operation: str = "", context: str = ""):
        """Create a context manager for wrapping risky operations"""
        return ErrorContext(self, category, severity, operation, context)


class ErrorContext:
    """Context manager for handling errors in specific operations"""

    def __init__(self, error_handler: ErrorHandler, category: ErrorCategory,
                 severity: ErrorSeverity, operation: str = "", context: str = ""):
        self.error_handler = error_handler
        self.category = category
        self.severity = severity
        self.operation = operation
        self.context = context
        self.failed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None and issubclass(exc_type, Exception):
            self.failed = True
            return self.error_handler.handle_error(
                error=exc_val,
                category=self.category,
                severity=self.severity,
                context=self.context,
                operation=self.operation
            )
        return False
