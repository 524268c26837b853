"""
cli.py - Rich Command Line Interface for Temporal Factor Lab

Usage:
    temporal-factor-lab --help
    temporal-factor-lab fit matrix.csv times.csv --factors 5 --output top_features.csv
    temporal-factor-lab generate --features 50 --output-dir demo_data
    temporal-factor-lab version

Input files:
    matrix.csv  features as rows, samples as columns; first column holds
                feature ids, first row holds sample ids
    times.csv   two columns: sample id, covariate value (header row)
"""

from __future__ import annotations

import warnings
from enum import Enum
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .exceptions import NonConvergenceWarning, TemporalFactorError

app = typer.Typer(
    name="temporal-factor-lab",
    help="Temporal Factor Lab: latent factors with Gaussian-process smoothness over time",
    add_completion=False,
    rich_markup_mode="rich",
)
console = Console()


# =============================================================================
# ENUMS FOR CLI OPTIONS
# =============================================================================

class ConvergenceChoice(str, Enum):
    fast = "fast"
    medium = "medium"
    slow = "slow"


class SeedChoice(str, Enum):
    pca = "pca"
    random = "random"


class DirectionChoice(str, Enum):
    any = "any"
    positive = "positive"
    negative = "negative"


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def load_matrix(path: Path) -> pd.DataFrame:
    """Load a features x samples CSV (first column = feature ids)."""
    if not path.exists():
        console.print(f"[red]Error:[/red] File not found: {path}")
        raise typer.Exit(1)
    return pd.read_csv(path, index_col=0)


def load_covariates(path: Path) -> pd.Series:
    """Load a sample -> time CSV (first column = sample ids)."""
    if not path.exists():
        console.print(f"[red]Error:[/red] File not found: {path}")
        raise typer.Exit(1)
    frame = pd.read_csv(path, index_col=0)
    if frame.shape[1] < 1:
        console.print(f"[red]Error:[/red] {path} needs a sample column and a time column")
        raise typer.Exit(1)
    series = frame.iloc[:, 0]
    series.index = series.index.astype(str)
    return series


def print_model_summary(model, title: str = "Trained Model"):
    """Print convergence and variance explained for a trained model."""
    from .reports import variance_explained_table

    conv = model.convergence
    table = Table(title=title, box=box.ROUNDED, show_header=False, title_style="bold cyan")
    table.add_column("Property", style="dim")
    table.add_column("Value", style="bold")

    table.add_row("Features (p)", str(model.n_features))
    table.add_row("Samples (n)", str(model.n_samples))
    table.add_row("Factors (K)", str(model.n_factors))
    state_style = "green" if conv.converged else "yellow"
    table.add_row("State", f"[{state_style}]{conv.state.value}[/{state_style}]")
    table.add_row("Iterations", f"{conv.n_iter} / {conv.max_iter}")
    table.add_row("ELBO", f"{conv.elbo:.4f}")
    table.add_row("Explained Variance", f"{model.total_explained_variance:.1%}")
    console.print(table)

    summary = variance_explained_table(model).iloc[:-1]
    factors_table = Table(title="Factors", box=box.SIMPLE)
    factors_table.add_column("Factor", style="cyan")
    factors_table.add_column("R²", justify="right")
    factors_table.add_column("Smoothness", justify="right")
    factors_table.add_column("Bar", justify="left")
    for label, row in summary.iterrows():
        bar_len = int(round(20 * row["smoothness"]))
        factors_table.add_row(
            str(label), f"{row['r2']:.1%}", f"{row['smoothness']:.2f}",
            f"[magenta]{'█' * bar_len}[/magenta]",
        )
    console.print(factors_table)


def print_top_features(model, top_n: int, direction: str):
    from .ranking import top_features

    table = Table(title=f"Top {top_n} Features ({direction})", box=box.SIMPLE)
    table.add_column("Factor", style="cyan")
    table.add_column("Features")
    for label, ranked in top_features(model, top_n=top_n, direction=direction).items():
        shown = ", ".join(f"{f} ({w:+.2f})" for f, w in zip(ranked.feature_ids, ranked.loadings))
        table.add_row(label, shown or "[dim]none[/dim]")
    console.print(table)


# =============================================================================
# COMMANDS
# =============================================================================

@app.command()
def fit(
    matrix_file: Path = typer.Argument(..., help="CSV with features as rows and samples as columns"),
    covariate_file: Path = typer.Argument(..., help="CSV mapping sample id to time value"),
    factors: int = typer.Option(5, "--factors", "-k", help="Number of factors to learn"),
    convergence: ConvergenceChoice = typer.Option(ConvergenceChoice.medium, "--convergence", "-c", help="Convergence mode"),
    seed_strategy: SeedChoice = typer.Option(SeedChoice.pca, "--seed-strategy", help="Initialization"),
    ard_factors: bool = typer.Option(False, "--ard-factors/--no-ard-factors", help="ARD prior on the scores"),
    drop_threshold: float = typer.Option(-1.0, "--drop-threshold", help="Prune factors with R² below this (negative = keep all)"),
    center: bool = typer.Option(True, "--center/--no-center", help="Center each feature"),
    max_iter: Optional[int] = typer.Option(None, "--max-iter", help="Override the iteration budget"),
    top_n: int = typer.Option(10, "--top-n", "-n", help="Top features shown per factor"),
    direction: DirectionChoice = typer.Option(DirectionChoice.any, "--direction", "-d", help="Ranking direction"),
    seed: Optional[int] = typer.Option(None, "--seed", "-s", help="Random seed"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the feature ranking table to this CSV"),
):
    """
    Fit a temporal factor model and report smoothness and top features.

    Example:
        temporal-factor-lab fit matrix.csv times.csv --factors 3 --convergence fast
    """
    from . import from_dataframe, train

    console.print(Panel.fit("🧬 [bold]Temporal Factor Fitting[/bold]", border_style="blue"))

    with console.status("[bold blue]Loading data..."):
        frame = load_matrix(matrix_file)
        covariates = load_covariates(covariate_file)

    console.print(f"  Loaded matrix: [cyan]{frame.shape[0]}[/cyan] features × [cyan]{frame.shape[1]}[/cyan] samples")

    try:
        data = from_dataframe(frame, covariates, n_factors=factors, center=center)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            console=console,
        ) as progress:
            progress.add_task(f"Training K={factors} ({convergence.value})...", total=None)
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", NonConvergenceWarning)
                model = train(
                    data,
                    n_factors=factors,
                    convergence_mode=convergence.value,
                    seed_strategy=seed_strategy.value,
                    ard_factors=ard_factors,
                    drop_factor_threshold=drop_threshold,
                    max_iter=max_iter,
                    seed=seed,
                )
    except (TemporalFactorError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if model.convergence.converged:
        console.print("  [green]✓[/green] Model converged\n")
    else:
        console.print("  [yellow]![/yellow] Iteration budget reached before convergence\n")

    print_model_summary(model)
    print_top_features(model, top_n, direction.value)

    if output:
        from .reports import ranking_table

        ranking_table(model, top_n=top_n, direction=direction.value).to_csv(output, index=False)
        console.print(f"\n  💾 Ranking saved to: [bold]{output}[/bold]")


@app.command()
def generate(
    features: int = typer.Option(50, "--features", "-p", help="Number of features"),
    time_points: int = typer.Option(5, "--time-points", "-t", help="Number of distinct time points"),
    replicates: int = typer.Option(3, "--replicates", "-r", help="Samples per time point"),
    smooth: int = typer.Option(1, "--smooth", help="Number of smooth factors"),
    static: int = typer.Option(1, "--static", help="Number of time-independent factors"),
    output_dir: Path = typer.Option(Path("."), "--output-dir", "-o", help="Directory for matrix.csv and times.csv"),
    seed: Optional[int] = typer.Option(None, "--seed", "-s", help="Random seed"),
):
    """
    Generate a synthetic time course for testing.

    Example:
        temporal-factor-lab generate --features 100 --smooth 2 --static 1 -o demo
    """
    from .simulation import simulate_time_course

    console.print(Panel.fit("🔧 [bold]Synthetic Time Course[/bold]", border_style="blue"))

    try:
        sim = simulate_time_course(
            n_features=features,
            time_points=np.arange(time_points, dtype=float),
            replicates=replicates,
            n_smooth=smooth,
            n_static=static,
            seed=seed,
        )
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    output_dir.mkdir(parents=True, exist_ok=True)
    matrix_path = output_dir / "matrix.csv"
    times_path = output_dir / "times.csv"

    pd.DataFrame(sim.Y, index=sim.feature_ids, columns=sim.sample_ids).to_csv(matrix_path)
    pd.Series(sim.covariates, name="time").rename_axis("sample").to_csv(times_path)

    console.print(f"  [green]✓[/green] {features} features × {len(sim.sample_ids)} samples")
    console.print(f"\n  💾 Saved to: [bold]{matrix_path}[/bold] and [bold]{times_path}[/bold]")


@app.command()
def version():
    """Show version information."""
    from . import __version__

    console.print(Panel(
        f"[bold cyan]Temporal Factor Lab[/bold cyan] v{__version__}\n\n"
        "Latent factor models with Gaussian-process\n"
        "smoothness over a temporal covariate.",
        border_style="cyan"
    ))


# =============================================================================
# ENTRY POINT
# =============================================================================

def main():
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
