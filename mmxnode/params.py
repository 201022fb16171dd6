"""Chain parameters and the formulas derived from them."""

from __future__ import annotations

from dataclasses import dataclass
from fractions import Fraction

from .types import Hash

_U64 = (1 << 64) - 1
_U128 = (1 << 128) - 1
_U256 = (1 << 256) - 1


@dataclass(frozen=True)
class ChainParams:
    """Consensus parameters of a chain."""

    decimals: int = 6
    challenge_delay: int = 4
    finality_delay: int = 16
    plot_filter: int = 8
    score_bits: int = 16
    space_diff_constant: int = 100_000_000
    target_score: int = 8192
    reward_factor: Fraction = Fraction(1, 1)
    min_txfee_io: int = 100
    min_txfee_sign: int = 1000
    min_txfee_exec: int = 10000


def validate_params(params):
    """Check the delay settings and return ``params`` unchanged."""
    if params.challenge_delay < 1:
        raise ValueError("challenge_delay < 1")
    if params.challenge_delay > params.finality_delay:
        raise ValueError("challenge_delay > finality_delay")
    return params


def check_plot_filter(params, challenge, plot_id):
    """Return True if the plot passes the filter for this challenge."""
    value = Hash.digest(bytes(challenge) + bytes(plot_id)).to_int()
    return value >> (256 - params.plot_filter) == 0


def calc_proof_score(params, ksize, quality, space_diff):
    """Return the score of a proof quality; lower is better."""
    base = (1 << (256 - params.score_bits)) & _U256
    divider = base // (space_diff * params.space_diff_constant)
    divider = (divider * (2 * ksize + 1)) & _U256
    divider = (divider << (ksize - 1)) & _U256
    return (Hash(quality).to_int() // divider) & _U128


def calc_block_reward(params, space_diff):
    """Return the block reward for a given space difficulty."""
    factor = Fraction(params.reward_factor)
    value = (space_diff * params.space_diff_constant * factor.numerator) & _U128
    value = (value << params.plot_filter) & _U128
    return (value // params.target_score // factor.denominator) & _U64


def calc_total_netspace(params, space_diff):
    """Return the estimated total space of the network in bytes."""
    value = (space_diff * params.space_diff_constant) & _U128
    value = (value << (params.plot_filter + params.score_bits)) & _U128
    value = (value // params.target_score) & _U64
    return int(0.762 * value)