"""
Metadata trailer on plain-text answer streams: `\n\n__METADATA__{json}__METADATA__`
after the last content chunk. Shared by the server (writer) and the API client (reader).
"""
import json

METADATA_DELIMITER = "__METADATA__"
TRAILER_START = "\n\n" + METADATA_DELIMITER


def format_trailer(payload_json: str) -> str:
    return f"{TRAILER_START}{payload_json}{METADATA_DELIMITER}"


def split_metadata(body: str) -> tuple[str, dict | None]:
    """Separate display text from a trailing metadata block. A missing or broken trailer yields (body, None)."""
    start = body.rfind(TRAILER_START)
    if start == -1 or not body.endswith(METADATA_DELIMITER) or len(body) - start < len(TRAILER_START) + len(METADATA_DELIMITER):
        return body, None
    raw = body[start + len(TRAILER_START):-len(METADATA_DELIMITER)]
    try:
        metadata = json.loads(raw)
    except json.JSONDecodeError:
        return body, None
    if not isinstance(metadata, dict):
        return body, None
    return body[:start], metadata


class TrailerParser:
    """
    Incremental reader: feed() returns text that is safe to display now, holding back
    any tail that could be the beginning of the trailer; finish() settles the rest.
    """

    def __init__(self):
        self._pending = ""
        self._in_trailer = False

    def feed(self, chunk: str) -> str:
        self._pending += chunk
        if self._in_trailer:
            return ""
        idx = self._pending.find(TRAILER_START)
        if idx != -1:
            self._in_trailer = True
            out, self._pending = self._pending[:idx], self._pending[idx:]
            return out
        keep = _partial_marker_suffix(self._pending)
        if keep:
            out, self._pending = self._pending[:-keep], self._pending[-keep:]
        else:
            out, self._pending = self._pending, ""
        return out

    def finish(self) -> tuple[str, dict | None]:
        """Returns (remaining display text, metadata or None)."""
        rest, self._pending = self._pending, ""
        if not self._in_trailer:
            return rest, None
        text, metadata = split_metadata(rest)
        return text, metadata


def _partial_marker_suffix(text: str) -> int:
    """Length of the longest suffix of text that is a proper prefix of TRAILER_START."""
    for n in range(min(len(text), len(TRAILER_START) - 1), 0, -1):
        if TRAILER_START.startswith(text[-n:]):
            return n
    return 0
