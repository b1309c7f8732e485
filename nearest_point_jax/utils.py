from typing import Callable, TypeVar

import jax
import jax.numpy as jnp

T = TypeVar("T")


def args_closure(
    fn: Callable[[jax.Array, T], jax.Array], args: T
) -> Callable[[jax.Array], jax.Array]:
    def wrapped(x: jax.Array) -> jax.Array:
        return fn(x, args)

    return wrapped


def as_scalar(value: jax.Array) -> jax.Array:
    """Squeeze a level function output of shape () or (1,) to a 0-d array."""
    return jnp.reshape(jnp.asarray(value), ())
