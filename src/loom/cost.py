"""Cost functions.

A cost is defined on a single output vector; everything else (lane batching,
gradients, R-derivatives of gradients) is derived with JAX unless a subclass has
a closed form.
"""

from __future__ import annotations

import abc

import equinox as eqx
import jax
import jax.numpy as jnp


class CostFunc(eqx.Module):
    """Scalar loss of one output vector against its target."""

    @abc.abstractmethod
    def cost(self, actual: jax.Array, expected: jax.Array) -> jax.Array:
        """Return the scalar cost of one output vector."""

    def gradient(self, actual: jax.Array, expected: jax.Array) -> jax.Array:
        """Derivative of the cost with respect to ``actual``.

        :param jax.Array actual: Outputs, [out] or [lanes, out].
        :param jax.Array expected: Targets with the same shape.
        :return jax.Array: Gradient with the shape of ``actual``.
        """
        grad_fn = jax.grad(self.cost)
        if actual.ndim == 1:
            return grad_fn(actual, expected)
        return jax.vmap(grad_fn)(actual, expected)

    def gradient_r(
        self, actual: jax.Array, r_actual: jax.Array, expected: jax.Array
    ) -> tuple[jax.Array, jax.Array]:
        """Return the gradient and its R-derivative along ``r_actual``."""
        return jax.jvp(lambda a: self.gradient(a, expected), (actual,), (r_actual,))

    def total(self, actual: jax.Array, expected: jax.Array) -> jax.Array:
        """Summed cost over lanes."""
        if actual.ndim == 1:
            return self.cost(actual, expected)
        return jnp.sum(jax.vmap(self.cost)(actual, expected))


class MeanSquaredCost(CostFunc):
    """Half the squared error, so the gradient is ``actual - expected``."""

    def cost(self, actual: jax.Array, expected: jax.Array) -> jax.Array:
        return 0.5 * jnp.sum((actual - expected) ** 2)

    def gradient(self, actual: jax.Array, expected: jax.Array) -> jax.Array:
        return actual - expected

    def gradient_r(self, actual, r_actual, expected):
        return actual - expected, r_actual


class CrossEntropyCost(CostFunc):
    """Bernoulli cross-entropy of probabilities ``actual`` against ``expected``."""

    def cost(self, actual: jax.Array, expected: jax.Array) -> jax.Array:
        return -jnp.sum(expected * jnp.log(actual) + (1 - expected) * jnp.log(1 - actual))


class SigmoidCECost(CostFunc):
    """Cross-entropy applied to sigmoid(actual); ``actual`` holds logits."""

    def cost(self, actual: jax.Array, expected: jax.Array) -> jax.Array:
        return jnp.sum(jax.nn.softplus(actual) - expected * actual)


COSTS: dict[str, type[CostFunc]] = {
    "mse": MeanSquaredCost,
    "cross_entropy": CrossEntropyCost,
    "sigmoid_ce": SigmoidCECost,
}


def cost_from_name(name: str) -> CostFunc:
    """Look up a cost function by config name.

    :param str name: One of ``COSTS``.
    :raises ValueError: If the name is unknown.
    :return CostFunc: A fresh cost instance.
    """
    if name not in COSTS:
        raise ValueError(f"Unknown cost {name!r}. Expected one of {sorted(COSTS)}")
    return COSTS[name]()
