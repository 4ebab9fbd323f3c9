import logging
import sys


def configure_logging(name: str, level: str = "INFO") -> logging.Logger:
	"""Plain structured-ish stdout logging for worker processes"""
	root = logging.getLogger()
	if not root.handlers:
		handler = logging.StreamHandler(sys.stdout)
		handler.setFormatter(logging.Formatter(
			fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
			datefmt="%Y-%m-%dT%H:%M:%S%z",
		))
		root.addHandler(handler)
	root.setLevel(level.upper())
	return logging.getLogger(name)
