# ---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Logger class used by the live-data client.  Installed with
#     logging.setLoggerClass() before any logger is created.
# ---------------------------------------------------------------------
from logging import NOTSET, Logger


class SquirrelLogger(Logger):
    """
    A custom logger inheriting from Python's logging module.

    Stack information can be included in every log message by calling
    setStackInfo(True).  A stack_info keyword passed to an individual call
    always wins over the global flag.

    exception() includes stack information by default, since it is only used
    on paths that should never be hit.
    """

    def __init__(self, name, level=NOTSET):
        super(SquirrelLogger, self).__init__(name, level)
        self.stack_info = False

    def setStackInfo(self, stack_info):
        """
        Set whether to include stack information in log messages.

        Args:
            stack_info (bool): Flag to include stack information.
        """
        self.stack_info = bool(stack_info)

    def _log(self, level, msg, args, exc_info=None, extra=None,
             stack_info=None, stacklevel=1):
        if stack_info is None:
            stack_info = self.stack_info

        super(SquirrelLogger, self)._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )

    def exception(self, msg, *args, stack_info=True, exc_info=True, **kwargs):
        """
        Convenience method for logging an ERROR with exception information.
        """
        kwargs["stacklevel"] = kwargs.get("stacklevel", 1) + 1
        self.error(
            msg, *args, stack_info=stack_info, exc_info=exc_info, **kwargs
        )
