import logging
import os
import sys

LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(role)s %(node_id)s] %(levelname)s %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class _NodeContextFilter(logging.Filter):
    """Stamps every record passing a node handler with the node's identity"""

    def __init__(self, node_id: str, role: str) -> None:
        super().__init__()
        self.node_id: str = node_id
        self.role: str = role

    def filter(self, record: logging.LogRecord) -> bool:
        record.node_id = self.node_id
        record.role = self.role
        return True


class NodeLogger:
    """Per-node logger for proxy and cache nodes.

    Lines go to stdout and, when `log_dir` is set, to `<log_dir>/<node_id>.log`.
    Library loggers such as the ring core can be routed into the same
    handlers with `attach`.
    """

    def __init__(
        self,
        node_id: str,
        role: str = "node",
        log_level: str = "INFO",
        log_dir: str | None = "logs",
    ) -> None:
        self.node_id: str = node_id
        self.role: str = role
        self.level: int = getattr(logging, log_level.upper(), logging.INFO)

        self.logger: logging.Logger = logging.getLogger(f"ringproxy.node.{node_id}")
        self.logger.handlers.clear()
        self.logger.setLevel(self.level)
        self.logger.propagate = False

        self.handlers: list[logging.Handler] = self._build_handlers(log_dir)
        for handler in self.handlers:
            self.logger.addHandler(handler)

        self._attached: list[logging.Logger] = []

    def _build_handlers(self, log_dir: str | None) -> list[logging.Handler]:
        context = _NodeContextFilter(self.node_id, self.role)
        formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.level)
        handlers: list[logging.Handler] = [console_handler]

        if log_dir is not None:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(os.path.join(log_dir, f"{self.node_id}.log"))
            # The file keeps everything, the console only the configured level
            file_handler.setLevel(logging.DEBUG)
            handlers.append(file_handler)

        for handler in handlers:
            handler.addFilter(context)
            handler.setFormatter(formatter)
        return handlers

    def attach(self, name: str) -> None:
        """Route records of another logger (e.g. "ringproxy.core") to this node"""
        target = logging.getLogger(name)
        if target.level == logging.NOTSET or target.level > self.level:
            target.setLevel(self.level)
        for handler in self.handlers:
            target.addHandler(handler)
        self._attached.append(target)

    def debug(self, msg: str) -> None:
        self.logger.debug(msg)

    def info(self, msg: str) -> None:
        self.logger.info(msg)

    def warning(self, msg: str) -> None:
        self.logger.warning(msg)

    def error(self, msg: str) -> None:
        self.logger.error(msg)

    def close(self) -> None:
        """Detach and close the handlers so the log file is released"""
        for target in [self.logger, *self._attached]:
            for handler in self.handlers:
                target.removeHandler(handler)
        self._attached.clear()

        for handler in self.handlers:
            handler.close()


def init_logger(
    node_id: str, role: str = "node", log_level: str = "INFO", log_dir: str | None = "logs"
) -> NodeLogger:
    """Initialize logger - always creates new instance"""
    return NodeLogger(node_id, role, log_level, log_dir)
