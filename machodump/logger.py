import logging

# Library-wide parent logger. Each module logs through a child of this logger, and handlers are left to the caller.
machodump_logger = logging.getLogger("machodump")
machodump_logger.addHandler(logging.NullHandler())
