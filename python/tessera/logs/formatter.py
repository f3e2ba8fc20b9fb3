import re
from datetime import datetime, UTC

from colorlog import ColoredFormatter

# Messages about one tool server start with its id, e.g. "[files] Status connected -> disconnected"
SERVER_TAG = re.compile(r"^\[([^\]]+)\] ")


class Formatter(ColoredFormatter):
  """
  Colored log lines with UTC timestamps. Logger names and timestamps are
  dimmed, and a leading `[server_id]` tag is highlighted so the output of
  many servers stays readable when interleaved.
  """

  DIM = "\033[38;5;245m"
  CYAN = "\033[36m"
  YELLOW = "\033[33m"
  RESET = "\033[0m"

  def __init__(self, *args, **kwargs):
    kwargs.setdefault("datefmt", "%Y-%m-%dT%H:%M:%S.%fZ")
    super().__init__(*args, **kwargs)

  def format(self, record):
    if record.levelname == "WARNING":
      record.levelname = f"{self.YELLOW} WARN{self.RESET}"
    return super().format(record)

  def formatTime(self, record, datefmt=None) -> str:
    try:
      created = datetime.fromtimestamp(record.created, UTC)
    except (OverflowError, OSError, ValueError):
      return f"{record.created}"
    return created.strftime(datefmt or self.datefmt)

  def formatMessage(self, record) -> str:
    record.name = f"{self.DIM}{record.name}{self.RESET}"
    record.asctime = f"{self.DIM}{self.formatTime(record, self.datefmt)}{self.RESET}"
    record.message = SERVER_TAG.sub(lambda m: f"{self.CYAN}[{m.group(1)}]{self.RESET} ", record.message, count=1)
    return super().formatMessage(record)
