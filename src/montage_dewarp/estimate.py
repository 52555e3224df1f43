"""
Estimate dewarp parameters for a stored grid montage.

Reads a montage written by `montage_dewarp.dataio.montage.save_montage`,
searches for the polynomial dewarp parameters that best align adjacent
tiles, and writes them next to the montage as JSON.
"""

import warnings
warnings.filterwarnings("ignore", category=UserWarning)
warnings.simplefilter("ignore", category=FutureWarning)

from pathlib import Path
from typing import Optional

import typer

from montage_dewarp.dataio.montage import load_montage
from montage_dewarp.register_dewarp import estimate_dewarp_parameters

app = typer.Typer()
app.pretty_exceptions_enable = False


@app.command()
def estimate_dewarp(
    montage_path: Path,
    output_path: Optional[Path] = None,
    array_name: Optional[str] = None,
    max_iterations: int = 500,
    restarts: bool = False,
    fractional_tolerance: float = 1e-4,
    parameters_tolerance: float = 1e-8,
    simplex_displacement: float = 1.0,
    max_workers: int = 8,
    debug: bool = False,
):
    """Estimate montage dewarp parameters.

    Usage: `estimate-dewarp "/path/to/montage"`

    Output will be in `/path/to/montage/dewarp_parameters.json` unless
    `--output-path` is given.

    Parameters
    ----------
    montage_path: Path
        Montage directory (zarr3 tile stack plus montage.json).
    output_path: Path
        Where to write the parameter JSON.
    array_name: str
        Intensity array to register on. Defaults to the stored name.
    max_iterations: int
        Cost function evaluation budget.
    restarts: bool
        Restart the simplex search after it converges.
    fractional_tolerance: float
        Function-value convergence tolerance.
    parameters_tolerance: float
        Simplex-diameter convergence tolerance.
    simplex_displacement: float
        Pixel displacement of each initial simplex edge.
    max_workers: int
        Worker threads.
    debug: bool
        Print progress from every component.
    """

    montage = load_montage(montage_path, array_name=array_name, show_progress=True)
    if output_path is None:
        output_path = Path(montage_path) / "dewarp_parameters.json"

    result = estimate_dewarp_parameters(
        montage,
        output_path=output_path,
        array_name=array_name or montage.array_names()[0],
        simplex_displacement=simplex_displacement,
        maximum_number_of_iterations=max_iterations,
        optimize_with_restarts=restarts,
        fractional_tolerance=fractional_tolerance,
        parameters_convergence_tolerance=parameters_tolerance,
        max_workers=max_workers,
        show_progress=True,
        debug=debug,
    )
    typer.echo(result.stop_condition_description)
    typer.echo(f"Parameters written to {output_path}")


# entry for point for CLI
def main():
    app()

if __name__ == "__main__":
    main()
