"""Model integration.

This is the only place that turns a config into blocks and gradienters. The rest
of the codebase talks in terms of:
- a `Block` (an eqx module: parameters + static structure)
- a gradienter with ``gradient(samples)`` / ``r_gradient(rv, samples)``
"""

from __future__ import annotations

import logging

import equinox as eqx
import jax

from loom.block import Block, FuncBlock
from loom.bptt import BPTT, FullRGradienter, Gradienter, TruncatedBPTT
from loom.cells import GRU, IRNN, LSTM
from loom.compose import StackedBlock
from loom.config import Config
from loom.cost import CostFunc, cost_from_name
from loom.types import float_dtype

logger = logging.getLogger(__name__)


def _build_cell(cfg: Config, input_size: int, *, key: jax.Array) -> Block:
    m = cfg.model
    if m.cell == "lstm":
        return LSTM(input_size, m.hidden_size, key=key)
    if m.cell == "gru":
        return GRU(input_size, m.hidden_size, key=key)
    if m.cell == "irnn":
        return IRNN(input_size, m.hidden_size, identity_scale=m.identity_scale, key=key)
    raise ValueError(f"Unknown model.cell {m.cell!r}")


def build_block(cfg: Config, *, key: jax.Array, input_size: int, output_size: int) -> Block:
    """Build the recurrent stack described by ``cfg.model``.

    :param Config cfg: Run configuration.
    :param jax.Array key: PRNG key for initialization.
    :param int input_size: Width of each input timestep.
    :param int output_size: Width of each output timestep.
    :raises ValueError: If head="none" and the hidden size differs from output_size.
    :return Block: A `StackedBlock` of cells (plus a stateless linear head).
    """
    m = cfg.model
    keys = jax.random.split(key, m.num_layers + 1)
    blocks: list[Block] = []
    width = input_size
    for i in range(m.num_layers):
        blocks.append(_build_cell(cfg, width, key=keys[i]))
        width = m.hidden_size
    if m.head == "linear":
        head = eqx.nn.Linear(width, output_size, dtype=float_dtype(), key=keys[-1])
        blocks.append(FuncBlock(head, state_size=0))
    elif width != output_size:
        raise ValueError(
            f"model.head='none' needs model.hidden_size ({width}) == task output size ({output_size})"
        )
    return StackedBlock(blocks)


def build_cost(cfg: Config) -> CostFunc:
    """Return the cost function named by ``engine.cost``."""
    return cost_from_name(cfg.engine.cost)


def build_gradienter(cfg: Config, block: Block, cost_func: CostFunc) -> Gradienter:
    """Wrap ``block`` in the gradienter named by ``engine.gradienter``."""
    e = cfg.engine
    common = dict(max_lanes=e.max_lanes, max_workers=e.max_workers)
    if e.gradienter == "bptt":
        return BPTT(block, cost_func, **common)
    if e.gradienter == "truncated":
        return TruncatedBPTT(block, cost_func, head_size=e.head_size, tail_size=e.tail_size, **common)
    if e.gradienter == "full_r":
        return FullRGradienter(block, cost_func, **common)
    raise ValueError(f"Unknown engine.gradienter {e.gradienter!r}")
