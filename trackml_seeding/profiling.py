from __future__ import annotations

import cProfile
import io
import logging
import pstats
import time
from contextlib import contextmanager
from typing import Iterator, Optional, Union

__all__ = ["prof", "format_stats"]

_SORT_ALIASES = {
    "tottime": pstats.SortKey.TIME,
    "cumtime": pstats.SortKey.CUMULATIVE,
    "calls": pstats.SortKey.CALLS,
    "ncalls": pstats.SortKey.CALLS,
    "pcalls": pstats.SortKey.PCALLS,
    "name": pstats.SortKey.NAME,
    "file": pstats.SortKey.FILENAME,
    "line": pstats.SortKey.LINE,
    "nfl": pstats.SortKey.NFL,
}


def format_stats(
    profile: cProfile.Profile,
    *,
    sort: Union[str, pstats.SortKey] = "tottime",
    limit: Optional[int] = 25,
    strip_dirs: bool = True,
) -> str:
    r"""
    Render a finished profile as text.

    ``sort`` accepts a :class:`pstats.SortKey` or one of the column aliases
    (``"tottime"``, ``"cumtime"``, ``"calls"``, ...); unknown aliases sort by
    total time.
    """
    key = sort if isinstance(sort, pstats.SortKey) else _SORT_ALIASES.get(str(sort).lower(), pstats.SortKey.TIME)
    buf = io.StringIO()
    stats = pstats.Stats(profile, stream=buf)
    if strip_dirs:
        stats.strip_dirs()
    stats.sort_stats(key)
    stats.print_stats(limit if limit is not None else 1_000_000)
    return buf.getvalue()


@contextmanager
def prof(
    enable: bool = False,
    *,
    sort: Union[str, pstats.SortKey] = "tottime",
    limit: Optional[int] = 25,
    out_path: Optional[str] = None,
    dump_path: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> Iterator[Optional[cProfile.Profile]]:
    r"""
    ``cProfile`` around a block, toggled by ``enable``.

    Compiled kernels appear as single opaque calls; the profile is mostly
    useful to see how time splits between stages, transfers and the host-side
    post-processing.

    Parameters
    ----------
    enable : bool
        If ``False`` the context does nothing and yields ``None``.
    sort, limit
        Forwarded to :func:`format_stats`.
    out_path : str, optional
        Write the text report here instead of logging/printing it.
    dump_path : str, optional
        Also write binary ``.pstats`` data (for snakeviz and friends).
    logger : logging.Logger, optional
        Emit the report at ``INFO`` instead of printing it.

    Examples
    --------
    >>> with prof(True, sort="cumtime", limit=10):
    ...     seeds = algorithm(spacepoints)
    """
    if not enable:
        yield None
        return

    pr = cProfile.Profile()
    t0 = time.perf_counter()
    pr.enable()
    try:
        yield pr
    finally:
        pr.disable()
        elapsed = time.perf_counter() - t0
        text = f"[prof] elapsed={elapsed:.6f}s sort={sort} limit={limit}\n"
        text += format_stats(pr, sort=sort, limit=limit)
        if dump_path:
            pr.dump_stats(dump_path)
        if out_path:
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(text)
        elif logger is not None:
            logger.info(text)
        else:
            print(text, end="")
