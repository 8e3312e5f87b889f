"""
Log aggregation and tailing for services.
"""
import logging
import queue
import threading
from typing import Callable, Dict, Iterator, Optional, Tuple

import click

from ..errors import ContainerRuntimeError
from ..RUNTIME.base import ContainerHandle, ContainerRuntime

logger = logging.getLogger(__name__)

_DONE = object()


class LogAggregator:
    """
    Merges the log streams of several containers into one prefixed stream.
    """
    def __init__(self, runtime: ContainerRuntime):
        """
        Initializes the log aggregator.

        :param runtime: The runtime that owns the containers.
        """
        self.runtime = runtime

    def stream(self,
               handles: Dict[str, ContainerHandle],
               follow: bool = False,
               tail: Optional[int] = None) -> Iterator[Tuple[str, str]]:
        """
        Yields (service, line) pairs from all handles.

        Without follow, each service's lines are emitted in order, one service after
        the other. With follow, lines are interleaved as they arrive.
        """
        if not follow:
            for name, handle in handles.items():
                yield from ((name, line) for line in self.runtime.logs(handle, follow=False, tail=tail))
            return

        lines: "queue.Queue" = queue.Queue()

        def pump(name: str, handle: ContainerHandle):
            try:
                for line in self.runtime.logs(handle, follow=True, tail=tail):
                    lines.put((name, line))
            except ContainerRuntimeError as e:
                logger.warning("Log stream of %s ended: %s", name, e)
            finally:
                lines.put(_DONE)

        for name, handle in handles.items():
            threading.Thread(target=pump, args=(name, handle), name=f"logs-{name}", daemon=True).start()

        remaining = len(handles)
        while remaining:
            item = lines.get()
            if item is _DONE:
                remaining -= 1
                continue
            yield item

    def tail_logs(self,
                  handles: Dict[str, ContainerHandle],
                  follow: bool = False,
                  tail: Optional[int] = None,
                  echo: Optional[Callable[[str], None]] = None):
        """
        Tails logs for the specified services and prints them.

        :param handles: Container handle per service name.
        """
        echo = echo or click.echo
        width = max((len(name) for name in handles), default=0)
        try:
            for name, line in self.stream(handles, follow=follow, tail=tail):
                echo(f"{name:{width}} | {line}")
        except KeyboardInterrupt:
            echo("\nStopping log tailing...")
