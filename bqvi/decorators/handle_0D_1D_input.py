from functools import wraps

import numpy as np


def _flatten(value, return_scalar):
    if np.ndim(value) == 0:
        return value
    value = np.ravel(value)
    if return_scalar:
        return value[0]
    return value


def handle_0D_1D_input(
    patched_kwargs: list, patched_argpos: list, return_scalar=False
):
    """
    Promote 0D and 1D array arguments of a method to 2D row arrays.

    The decorated method always sees arrays of shape ``(N, D)``. If the
    caller passed a 1D array, the outputs are flattened back, and optionally
    reduced to a scalar.

    Parameters
    ----------
    patched_kwargs : list of str
        Names of the keyword arguments that should be promoted.
    patched_argpos : list of int
        Positions (excluding ``self``) of the same arguments when they are
        passed positionally.
    return_scalar : bool, optional
        If the input is 1D, return the first element of each output instead
        of a flat array, by default ``False``.
    """

    def decorator(function):
        @wraps(function)
        def wrapper(self, *args, **kwargs):
            args = list(args)
            input_dims = None
            for name, pos in zip(patched_kwargs, patched_argpos):
                if name in kwargs:
                    input_dims = np.ndim(kwargs[name])
                    kwargs[name] = np.atleast_2d(kwargs[name])
                elif pos < len(args):
                    input_dims = np.ndim(args[pos])
                    args[pos] = np.atleast_2d(args[pos])

            result = function(self, *args, **kwargs)

            if input_dims != 1:
                return result
            if isinstance(result, tuple):
                return tuple(_flatten(r, return_scalar) for r in result)
            return _flatten(result, return_scalar)

        return wrapper

    return decorator
