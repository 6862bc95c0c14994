"""
Triangle orientation: find a start mint and direction that closes a 3-pool cycle.
"""
from dataclasses import dataclass
from typing import Optional, Tuple

from .exceptions import OrientationError
from .pools import Pool


@dataclass(frozen=True)
class Triangle:
    """
    A closed cycle through three pools.

    in_mints[i] is the mint sold into pools[i]; the mint bought from
    pools[2] is start_mint again.
    """
    start_mint: str
    in_mints: Tuple[str, str, str]
    pools: Tuple[Pool, Pool, Pool]

    @property
    def out_mints(self) -> Tuple[str, str, str]:
        return (self.in_mints[1], self.in_mints[2], self.start_mint)


def _walk(start: str, pools: Tuple[Pool, Pool, Pool]) -> Optional[Tuple[str, str, str]]:
    current = start
    in_mints = []
    for pool in pools:
        nxt = pool.other_mint(current)
        if nxt is None:
            return None
        in_mints.append(current)
        current = nxt
    if current != start:
        return None
    return (in_mints[0], in_mints[1], in_mints[2])


def solve_triangle(pool1: Pool, pool2: Pool, pool3: Pool) -> Optional[Triangle]:
    """
    Orient three pools into a cycle, anchored on pool1.

    Tries pool1's base mint as the start, then its quote mint, and walks
    pool1 -> pool2 -> pool3. Returns None when neither start closes.
    """
    pools = (pool1, pool2, pool3)
    for start in (pool1.base_mint, pool1.quote_mint):
        if not start:
            continue
        in_mints = _walk(start, pools)
        if in_mints is not None:
            return Triangle(start_mint=start, in_mints=in_mints, pools=pools)
    return None


def orient_triangle(pool1: Pool, pool2: Pool, pool3: Pool) -> Triangle:
    """Like solve_triangle, but raises OrientationError when no start mint closes the cycle."""
    triangle = solve_triangle(pool1, pool2, pool3)
    if triangle is None:
        raise OrientationError(
            f"pools {pool1.address}, {pool2.address}, {pool3.address} do not form a closed 3-cycle"
        )
    return triangle
