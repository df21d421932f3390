"""Root logging setup: one line per record, with `extra` fields appended as key=value."""

import logging

# Attributes every LogRecord carries; anything else came in through `extra`.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "context"}


class ContextFormatter(logging.Formatter):
    """Formatter exposing a record's `extra` fields as %(context)s."""

    def format(self, record: logging.LogRecord) -> str:
        fields = sorted(
            (key, value) for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        )
        record.context = "".join(f" {key}={value}" for key, value in fields)
        if record.context:
            record.context = " |" + record.context
        return super().format(record)


def setup_logging(level: str) -> None:
    """Configure the root logger once per Streamlit run."""
    logging.basicConfig(level=level.upper(), force=True)
    formatter = ContextFormatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s%(context)s")
    for handler in logging.getLogger().handlers:
        handler.setFormatter(formatter)
