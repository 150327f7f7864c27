"""Base class for FFDReg providing standardized logging.

Every stateful FFDReg class (registrars, metric, optimizers, pyramid, tools)
inherits from FFDRegBase so that progress of a registration run is reported
through one shared logger instead of scattered print statements.

All classes share a logger called "FFDReg" and prefix their messages with their
class name. Output can be restricted to a subset of classes.

Example:
    >>> import logging
    >>> from ffdreg.ffdreg_base import FFDRegBase
    >>>
    >>> class LevelRunner(FFDRegBase):
    ...     def __init__(self):
    ...         super().__init__(class_name="LevelRunner", log_level=logging.INFO)
    ...
    ...     def run(self):
    ...         self.log_info("Starting level %d", 0)
    >>>
    >>> FFDRegBase.set_log_classes(["LevelRunner"])
    >>> FFDRegBase.set_log_all_classes()
"""

import logging


class ClassNameFilter(logging.Filter):
    """Filter that passes only records emitted by an allowed set of classes."""

    def __init__(self):
        super().__init__()
        self.enabled = False
        self.allowed_classes = set()

    def filter(self, record):
        if not self.enabled:
            return True

        if hasattr(record, 'class_name'):
            return record.class_name in self.allowed_classes

        return True


class FFDRegBase:
    """Mixin giving FFDReg classes a shared, class-prefixed logger.

    Class Attributes:
        _shared_logger (logging.Logger): Logger shared by all FFDReg classes
        _class_filter (ClassNameFilter): Filter selecting which classes log
        _logger_initialized (bool): Whether the shared logger has been set up

    Instance Attributes:
        class_name (str): Prefix used for this instance's log messages
        log_level (int): Logging level requested by this instance
    """

    _shared_logger = None
    _class_filter = None
    _logger_initialized = False

    def __init__(
        self,
        class_name: str | None = None,
        log_level: int | str = logging.INFO,
        log_to_file: str | None = None,
    ):
        """Initialize logging for the instance.

        Args:
            class_name: Name used to prefix log messages. Defaults to the
                concrete class name.
            log_level: Logging level as an integer or a name such as 'DEBUG'.
                Default: logging.INFO
            log_to_file: Optional file receiving a copy of the log output.
                Only honoured by the first instance, which creates the logger.
        """
        if class_name is None:
            class_name = self.__class__.__name__
        self.class_name = class_name

        if not FFDRegBase._logger_initialized:
            FFDRegBase._initialize_shared_logger(log_level, log_to_file)

        self.logger = FFDRegBase._shared_logger

        if isinstance(log_level, str):
            log_level = getattr(logging, log_level.upper())
        self.log_level = log_level

    @classmethod
    def _initialize_shared_logger(cls, log_level, log_to_file=None):
        """Create the shared logger and its handlers (called once)."""
        if cls._logger_initialized:
            return

        cls._shared_logger = logging.getLogger("FFDReg")

        if isinstance(log_level, str):
            log_level = getattr(logging, log_level.upper())

        cls._shared_logger.setLevel(log_level)
        cls._shared_logger.handlers.clear()

        cls._class_filter = ClassNameFilter()

        formatter = logging.Formatter(
            '%(asctime)s %(levelname)s %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        )

        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.addFilter(cls._class_filter)
        console_handler.setFormatter(formatter)
        cls._shared_logger.addHandler(console_handler)

        if log_to_file is not None:
            file_handler = logging.FileHandler(log_to_file)
            file_handler.setLevel(log_level)
            file_handler.addFilter(cls._class_filter)
            file_handler.setFormatter(formatter)
            cls._shared_logger.addHandler(file_handler)

        cls._shared_logger.propagate = False

        cls._logger_initialized = True

    @classmethod
    def set_log_level(cls, log_level: int | str) -> None:
        """Set the logging level of the shared logger and all its handlers.

        Args:
            log_level: Integer level or level name ('DEBUG', 'INFO', ...).
        """
        if isinstance(log_level, str):
            log_level = getattr(logging, log_level.upper())

        if cls._shared_logger is not None:
            cls._shared_logger.setLevel(log_level)
            for handler in cls._shared_logger.handlers:
                handler.setLevel(log_level)

    @classmethod
    def set_log_classes(cls, class_names: list[str]) -> None:
        """Only show log output from the named classes.

        Args:
            class_names: Class names whose messages stay visible, e.g.
                ["RegisterImagesBSpline", "LBFGSOptimizer"]
        """
        if cls._class_filter is not None:
            cls._class_filter.enabled = True
            cls._class_filter.allowed_classes = set(class_names)

    @classmethod
    def set_log_all_classes(cls) -> None:
        """Show log output from every class again."""
        if cls._class_filter is not None:
            cls._class_filter.enabled = False
            cls._class_filter.allowed_classes.clear()

    @classmethod
    def get_log_classes(cls) -> list[str]:
        """Return the filtered class names, or [] when all classes are shown."""
        if cls._class_filter is not None and cls._class_filter.enabled:
            return sorted(cls._class_filter.allowed_classes)
        return []

    def log_debug(self, message: str, *args) -> None:
        """Log a debug message with optional %-style arguments."""
        self._log(logging.DEBUG, message, *args)

    def log_info(self, message: str, *args) -> None:
        """Log an info message with optional %-style arguments."""
        self._log(logging.INFO, message, *args)

    def log_warning(self, message: str, *args) -> None:
        """Log a warning message with optional %-style arguments."""
        self._log(logging.WARNING, message, *args)

    def log_error(self, message: str, *args) -> None:
        """Log an error message with optional %-style arguments."""
        self._log(logging.ERROR, message, *args)

    def log_critical(self, message: str, *args) -> None:
        """Log a critical message with optional %-style arguments."""
        self._log(logging.CRITICAL, message, *args)

    def _log(self, level: int, message: str, *args) -> None:
        """Emit a record prefixed with the class name.

        The record carries a ``class_name`` attribute used by ClassNameFilter.
        Formatting of ``args`` is deferred until a handler accepts the record.
        """
        formatted_message = f"{self.class_name} {message}"

        if self.logger.isEnabledFor(level):
            record = self.logger.makeRecord(
                self.logger.name,
                level,
                "(unknown file)",
                0,
                formatted_message,
                args,
                None,
            )
            record.class_name = self.class_name
            self.logger.handle(record)

    def log_section(self, title: str, *args, width: int = 70, char: str = '=') -> None:
        """Log a title framed by separator lines.

        Example:
            >>> self.log_section("Level %d of %d", 1, 3)
        """
        separator = char * width
        self.log_info(separator)
        self.log_info(title, *args)
        self.log_info(separator)

    def log_progress(self, current: int, total: int, prefix: str = 'Progress') -> None:
        """Log ``current/total`` with a percentage."""
        percentage = (current / total) * 100 if total > 0 else 0
        self.log_info("%s: %d/%d (%.1f%%)", prefix, current, total, percentage)
