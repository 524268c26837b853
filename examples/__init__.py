"""
temporal_factor_lab Examples Package
====================================

Runnable examples for temporal factor analysis of time-course data.

Examples
--------
smooth_factors : module
    Simulate a time course, train a model and separate smooth from
    time-independent factors.
rank_markers : module
    Rank the top positive and negative features of every factor.

Quick Start
-----------
Run any example directly from the command line:

    $ python examples/smooth_factors.py
    $ python examples/rank_markers.py

Or import as modules:

    >>> from examples import run_example
    >>> model = run_example("smooth_factors")
"""

__all__ = [
    "smooth_factors",
    "rank_markers",
]


def list_examples():
    """
    List all available examples with descriptions.

    Returns
    -------
    dict
        Dictionary mapping example names to their descriptions.
    """
    return {
        "smooth_factors": (
            "Train on a simulated time course with one smooth and one static "
            "factor; compare learned smoothness with the ground truth."
        ),
        "rank_markers": (
            "Rank the strongest positive and negative features per factor "
            "and export them as a long table."
        ),
    }


def run_example(name, *args, **kwargs):
    """
    Dynamically import and run an example.

    Parameters
    ----------
    name : str
        Name of the example to run (without .py extension).
    *args, **kwargs
        Arguments to pass to the example's main() function.

    Returns
    -------
    result
        Return value from the example's main() function.
    """
    import importlib

    valid_examples = list_examples().keys()
    if name not in valid_examples:
        raise ValueError(
            f"Unknown example '{name}'. Valid examples: {', '.join(valid_examples)}"
        )

    module = importlib.import_module(f"examples.{name}")

    if hasattr(module, "main"):
        return module.main(*args, **kwargs)
    else:
        raise AttributeError(
            f"Example '{name}' does not have a main() function"
        )


__all__.extend([
    "list_examples",
    "run_example",
])
