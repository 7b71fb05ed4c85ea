"""loom: recurrent-network training engine on JAX/Equinox.

Blocks map (input, state) to (output, new state) for a batch of lanes. The engine
runs them over variable-length sequences, back-propagates through time (fully or
truncated), carries R-operator derivatives for Hessian-vector products, and
spreads sub-batches over a bounded worker pool.
"""

from __future__ import annotations

from loom._version import __version__
from loom.block import Block, BlockOutput, BlockROutput, FuncBlock, LeafBlock
from loom.bptt import BPTT, FullRGradienter, Gradienter, TruncatedBPTT
from loom.cells import GRU, IRNN, LSTM
from loom.compose import ParallelBlock, StackedBlock, StateOutBlock
from loom.cost import CostFunc, CrossEntropyCost, MeanSquaredCost, SigmoidCECost, cost_from_name
from loom.grad_helper import GradHelper
from loom.gradient import Gradient, GradientPool, ParamArena, RGradient, random_rvector, zero_rvector
from loom.runner import Runner, total_cost
from loom.seqfunc import (
    Bidirectional,
    BlockSeqFunc,
    ComposedSeqFunc,
    MapSeqFunc,
    SeqFunc,
    SeqFuncFunc,
    SeqFuncGradienter,
)
from loom.state import CompositeState, VecRState, VecState
from loom.types import Sequence

__all__ = [
    "BPTT",
    "GRU",
    "IRNN",
    "LSTM",
    "Bidirectional",
    "Block",
    "BlockOutput",
    "BlockROutput",
    "BlockSeqFunc",
    "ComposedSeqFunc",
    "CompositeState",
    "CostFunc",
    "CrossEntropyCost",
    "FullRGradienter",
    "FuncBlock",
    "GradHelper",
    "Gradient",
    "GradientPool",
    "Gradienter",
    "LeafBlock",
    "MapSeqFunc",
    "MeanSquaredCost",
    "ParallelBlock",
    "ParamArena",
    "RGradient",
    "Runner",
    "SeqFunc",
    "SeqFuncFunc",
    "SeqFuncGradienter",
    "Sequence",
    "SigmoidCECost",
    "StackedBlock",
    "StateOutBlock",
    "TruncatedBPTT",
    "VecRState",
    "VecState",
    "__version__",
    "cost_from_name",
    "random_rvector",
    "total_cost",
    "zero_rvector",
]
