from textwrap import indent

import numpy as np


def summarize(obj, arr_size_thresh=10, precision=4):
    """Describe an object in one short string.

    Small arrays are printed in full with reduced precision, larger arrays
    only by shape. Anything else falls back to ``_short_repr()`` when the
    object provides one, otherwise to ``repr()``.

    Parameters
    ----------
    obj : any
        The object to summarize.
    arr_size_thresh : float, optional
        Arrays with fewer elements than this are printed in full. Default
        `10`.
    precision : int, optional
        Number of decimals for array elements. Default `4`.

    Returns
    -------
    string : str
        The summary.
    """
    if isinstance(obj, np.ndarray):
        if obj.size < arr_size_thresh:
            text = np.array2string(
                obj, precision=precision, suppress_small=True, separator=", "
            )
            if "\n" in text:
                text = indent("\n" + text, "    ")
            return f"{text} : ndarray"
        return f"{obj.shape} ndarray"
    if hasattr(obj, "_short_repr"):
        return obj._short_repr()
    if isinstance(obj, dict):
        return object.__repr__(obj)
    return repr(obj)


def format_dict(d, **kwargs):
    """Pretty-print a (possibly nested) dictionary of summaries.

    Parameters
    ----------
    d : dict or None
        The dictionary to format.
    kwargs : dict, optional
        Forwarded to ``summarize()``.

    Returns
    -------
    string : str
        The formatted dictionary.
    """
    if d is None:
        return "None"
    lines = []
    for key, val in d.items():
        key_text = repr(key) if isinstance(key, str) else str(key)
        if isinstance(val, dict):
            val_text = format_dict(val, **kwargs)
        else:
            val_text = summarize(val, **kwargs)
        lines.append(f"{key_text}: {val_text},")
    return "{\n" + indent("\n".join(lines), "    ") + "\n}"


def full_repr(obj, title, order=None, exclude=None, **kwargs):
    """List every attribute of ``obj`` with a short summary of its value.

    Attributes named in ``order`` come first (dotted names such as
    ``"vp.K"`` are resolved), the rest follow alphabetically.
    """
    order = [] if order is None else order
    exclude = [] if exclude is None else exclude
    kwargs.pop("expand", None)
    body = []
    for key in order:
        value = obj
        for part in key.split("."):
            value = getattr(value, part, None)
        body.append(f"self.{key} = {summarize(value, **kwargs)}")
    for key in sorted(vars(obj)):
        if key in order or key in exclude:
            continue
        body.append(f"self.{key} = {summarize(vars(obj)[key], **kwargs)}")
    return title + ":\n" + indent(",\n".join(body), "    ")
