"""Marker-block editor.

A marker block is the run of lines between a begin-marker line and an
end-marker line inside an arbitrary text file.  The editor rewrites only
that run and passes every other line through untouched, so it is safe on
files other tools also manage (/etc/hosts, /etc/fstab, shell profiles).

Both operations read their input line by line from a text stream and return
the new full contents; callers decide whether and how to write it.
"""

import io

DEFAULT_BEGIN_MARKER = "# BEGIN NODETUNE MANAGED BLOCK"
DEFAULT_END_MARKER = "# END NODETUNE MANAGED BLOCK"
# the legacy default pair and every owner_markers() pair start with these
RESERVED_MARKER_PREFIXES = ("# BEGIN NODETUNE", "# END NODETUNE")


def owner_markers(owner: str, label: str = "") -> tuple:
    """Begin/end markers scoped to one owning HostConfig."""
    tag = f"NODETUNE {label} {owner}" if label else f"NODETUNE {owner}"
    return f"# BEGIN {tag}", f"# END {tag}"


def is_reserved_marker(marker: str) -> bool:
    return marker.strip().startswith(RESERVED_MARKER_PREFIXES)


def _is_marker(line: str, marker: str) -> bool:
    return line.rstrip() == marker.rstrip()


def _lines(reader):
    """Yield (line, had_newline) pairs from a text stream."""
    for raw in reader:
        if raw.endswith("\n"):
            yield raw[:-1], True
        else:
            yield raw, False


def _join(lines: list, trailing_newline: bool) -> str:
    if not lines:
        return ""
    text = "\n".join(lines)
    return text + "\n" if trailing_newline else text


def write_block(reader, begin_marker: str, end_marker: str, block: str) -> str:
    """Insert or replace the block delimited by the markers.

    - markers present: everything strictly between them is replaced;
    - begin marker without a later end marker: the stale tail up to EOF is
      dropped and the end marker is appended after the new block;
    - no begin marker: begin marker, block and end marker are appended.

    Only the first begin marker counts; later ones are ordinary lines.
    """
    block = block.rstrip("\n")
    out = []
    found = inside = False
    # an empty file gains a newline-terminated block
    trailing = True

    for line, trailing in _lines(reader):
        if not found and _is_marker(line, begin_marker):
            found = inside = True
            out.extend((begin_marker, block))
            continue
        if inside and _is_marker(line, end_marker):
            inside = False
            out.append(end_marker)
            continue
        if not inside:
            out.append(line)

    if found and inside:
        out.append(end_marker)
    elif not found:
        out.extend((begin_marker, block, end_marker))

    return _join(out, trailing)


def delete_block(reader, begin_marker: str, end_marker: str) -> str:
    """Remove the first begin/end pair and everything between them.

    An unterminated block is removed up to EOF.  Without a begin marker the
    contents come back unchanged.
    """
    out = []
    state = "before"
    trailing = True

    for line, trailing in _lines(reader):
        if state == "before" and _is_marker(line, begin_marker):
            state = "inside"
            continue
        if state == "inside":
            if _is_marker(line, end_marker):
                state = "after"
            continue
        out.append(line)

    return _join(out, trailing)


def insert_text(text: str, begin_marker: str, end_marker: str, block: str) -> str:
    return write_block(io.StringIO(text), begin_marker, end_marker, block)


def delete_text(text: str, begin_marker: str, end_marker: str) -> str:
    return delete_block(io.StringIO(text), begin_marker, end_marker)
