"""
Graceful shutdown support for long-running snapshot loaders.

SIGTERM/SIGINT only raise a flag: a snapshot run that is already writing is
never interrupted, the loader simply does not start the next one. Registered
cleanup callbacks (typically closing warehouse connections) run afterwards.
"""

import signal
import logging
from typing import Callable, List, Optional


class GracefulShutdownHandler:
    """
    Tracks shutdown requests and runs cleanup callbacks.

    Usage:
        shutdown_handler = GracefulShutdownHandler(__name__)
        shutdown_handler.register_cleanup(store.close)
        shutdown_handler.start_listening()

        for batch in batches:
            if shutdown_handler.should_shutdown:
                break
            runner.run(batch)

        shutdown_handler.cleanup()
    """

    def __init__(self, logger_name: str = None):
        self.should_shutdown = False
        self.cleanup_functions: List[Callable[[], None]] = []
        self.logger = logging.getLogger(logger_name or __name__)
        self._previous_handlers = {}

    def register_cleanup(self, cleanup_func: Callable[[], None]) -> None:
        """Register a callback to run during cleanup(), in registration order."""
        self.cleanup_functions.append(cleanup_func)
        self.logger.debug(f"Cleanup callback registered: {getattr(cleanup_func, '__name__', cleanup_func)}")

    def request_shutdown(self, reason: str = "requested") -> None:
        """Flag shutdown without a signal (used by embedding code and tests)."""
        if not self.should_shutdown:
            self.logger.info(f"Shutdown {reason}, no further snapshot runs will start")
        self.should_shutdown = True

    def _signal_handler(self, signum: int, frame) -> None:
        signal_name = signal.Signals(signum).name
        self.request_shutdown(f"signal {signal_name} received")

    def start_listening(self) -> None:
        """Install handlers for SIGTERM and SIGINT."""
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._previous_handlers[signum] = signal.signal(signum, self._signal_handler)
        self.logger.info("Listening for SIGTERM/SIGINT; the current snapshot run will finish before exit")

    def stop_listening(self) -> None:
        """Restore the signal handlers that were active before start_listening()."""
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous)
        self._previous_handlers.clear()

    def cleanup(self) -> None:
        """Run every registered cleanup callback; one failing does not stop the rest."""
        self.logger.info(f"Running {len(self.cleanup_functions)} cleanup callback(s)")

        for cleanup_func in self.cleanup_functions:
            name = getattr(cleanup_func, '__name__', repr(cleanup_func))
            try:
                cleanup_func()
                self.logger.debug(f"Cleanup function finished: {name}")
            except Exception as e:
                self.logger.error(f"Cleanup callback {name} failed: {e}")

        self.cleanup_functions.clear()
        self.logger.info("Cleanup finished")


class DatabaseConnectionManager:
    """
    Closes registered database connections when the shutdown handler cleans up.
    """

    def __init__(self, shutdown_handler: GracefulShutdownHandler, logger_name: str = None):
        self.shutdown_handler = shutdown_handler
        self.connections = []
        self.logger = logging.getLogger(logger_name or __name__)

        self.shutdown_handler.register_cleanup(self.close_all_connections)

    def add_connection(self, connection) -> None:
        self.connections.append(connection)
        self.logger.debug(f"Managing {len(self.connections)} database connection(s)")

    def close_all_connections(self) -> None:
        """Close all managed connections, skipping ones already closed."""
        self.logger.info(f"Closing {len(self.connections)} warehouse connection(s)")

        for conn in self.connections:
            if getattr(conn, 'closed', False):
                continue
            try:
                conn.close()
            except Exception as e:
                self.logger.error(f"Could not close connection: {e}")

        self.connections.clear()
