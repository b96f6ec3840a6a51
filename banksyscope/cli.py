import sys
import os
import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, BarColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .pipeline import GridSpec, run_grid
from .config import load_params_yaml, section
from .exceptions import BanksyScopeError
from .io import (
    align_coordinates,
    read_coordinates,
    read_expression,
    save_adata,
    save_state,
    write_comparison,
    write_labels,
)
from .logging_utils import close_logger, setup_logger
from . import __version__


console = Console()


def _summary_table(result) -> Table:
    table = Table(title="Grid results", show_lines=False)
    for col in ("labeling", "status", "clusters", "note"):
        table.add_column(col)
    for lab in result.labelings.values():
        if lab.ok:
            table.add_row(lab.name, "[green]ok", str(lab.n_clusters), "; ".join(lab.notes))
        else:
            table.add_row(lab.name, "[red]failed", "-", str(lab.error))
    return table


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="banksyscope", message="%(prog)s %(version)s")
@click.option("--expression", required=True, type=click.Path(exists=True), help="Cells x genes matrix (.h5ad or CSV with cell IDs in the first column).")
@click.option("--coords", type=click.Path(exists=True), help="Coordinates CSV; defaults to obsm['spatial'] of an .h5ad input.")
@click.option("--coord-columns", default="x,y", show_default=True, help="Comma-separated coordinate column names.")
@click.option("--cell-id-column", default=None, help="Column of the coordinates CSV holding cell IDs.")
@click.option("--out-dir", required=True, type=click.Path(), help="Output directory.")
@click.option("--k-geom", type=int, multiple=True, help="Spatial neighbor counts: H_0 first, then H_1. Repeatable.")
@click.option("--lambda", "lambdas", type=float, multiple=True, help="Mixing weight(s) in [0, 1]. Repeatable.")
@click.option("--resolution", "resolutions", type=float, multiple=True, help="Resolution(s), or cluster counts for kmeans/mclust. Repeatable.")
@click.option("--k-neighbors", type=int, multiple=True, help="SNN graph neighbor count(s). Repeatable.")
@click.option("--algorithm", type=click.Choice(["leiden", "louvain", "kmeans", "mclust"], case_sensitive=False), multiple=True, help="Clustering algorithm(s). Repeatable.")
@click.option("--seed", type=int, default=None, help="Base seed for every combo.")
@click.option("--harmonic/--no-harmonic", default=None, help="Include the azimuthal H_1 block.")
@click.option("--n-pcs", type=int, default=None, help="Number of principal components.")
@click.option("--umap/--no-umap", "compute_umap", default=None, help="Also compute a 2-D UMAP per embedding.")
@click.option("--reference", default=None, help="Harmonize every labeling against this one (labeling name); default chains them.")
@click.option("--no-harmonize", is_flag=True, help="Skip label harmonization.")
@click.option("--metric", type=click.Choice(["ari", "nmi", "ami"], case_sensitive=False), default=None, help="Agreement metric for the comparison matrix.")
@click.option("--config", type=click.Path(exists=True), help="Optional YAML file overriding config/params.yaml.")
@click.option("--n-jobs", type=int, default=None, help="Parallel workers (default: runtime.n_jobs or $BANKSYSCOPE_N_JOBS).")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False), default="INFO", show_default=True)
def main(expression, coords, coord_columns, cell_id_column, out_dir, k_geom, lambdas, resolutions, k_neighbors, algorithm, seed, harmonic, n_pcs, compute_umap, reference, no_harmonize, metric, config, n_jobs, log_level):
    """BanksyScope CLI: run a BANKSY parameter grid and write labels."""
    os.makedirs(out_dir, exist_ok=True)
    try:
        cfg = load_params_yaml(config)
    except BanksyScopeError as e:
        console.print(f"[red]Error: {e}")
        sys.exit(2)
    io_cfg = section(cfg, "io")
    setup_logger(out_dir, log_level, io_cfg)

    try:
        if n_pcs is not None:
            cfg.setdefault("reduce", {})["n_pcs"] = n_pcs
        if compute_umap is not None:
            cfg.setdefault("reduce", {})["compute_umap"] = compute_umap
        grid = GridSpec.from_config(
            cfg,
            k_geom=list(k_geom) or None,
            use_harmonic=harmonic,
            lambdas=list(lambdas) or None,
            k_neighbors=list(k_neighbors) or None,
            resolutions=list(resolutions) or None,
            algorithm=list(algorithm) or None,
            seed=seed,
        ).validate()
        metric = (metric or section(cfg, "compare")["metric"]).lower()

        X, cell_names, gene_names = read_expression(expression)
        if coords:
            cols = [c.strip() for c in coord_columns.split(",") if c.strip()]
            C = align_coordinates(read_coordinates(coords, cols, index_col=cell_id_column), cell_names)
        elif expression.endswith(".h5ad"):
            import anndata as ad
            C = ad.read_h5ad(expression).obsm["spatial"]
        else:
            raise click.UsageError("--coords is required unless the expression file is .h5ad with obsm['spatial']")
    except (BanksyScopeError, ValueError, KeyError) as e:
        console.print(f"[red]Error: {e}")
        close_logger()
        sys.exit(2)

    with Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        t = progress.add_task("Starting grid", total=len(grid.combos()))

        def _cb(desc: str):
            progress.update(t, description=desc)
            if desc.startswith("Clustered "):
                progress.update(t, completed=int(desc.split()[1].split("/")[0]))

        try:
            result = run_grid(
                X, C, grid,
                config=cfg,
                n_jobs=n_jobs,
                progress_callback=_cb,
                gene_names=gene_names,
                cell_names=cell_names,
            )
            if not no_harmonize and len(result.successful()) > 1:
                progress.update(t, description="Harmonize labels")
                result.harmonize(reference=reference, min_overlap=float(section(cfg, "harmonize")["min_overlap"]))
            progress.update(t, description="Finished")
        except Exception as e:
            progress.update(t, description="Error")
            console.print(f"[red]Error: {e}")
            close_logger()
            sys.exit(1)

    outputs = {"labels": write_labels(result.labels_frame(), out_dir, io_cfg["final_format"])}
    if len(result.successful()) > 1:
        outputs["comparison"] = write_comparison(result.compare(metric=metric), out_dir, metric)
    if io_cfg.get("write_h5ad"):
        outputs["adata"] = save_adata(result.to_anndata(), out_dir, "banksyscope", io_cfg["h5ad_compression"])
    save_state(out_dir, {
        "version": __version__,
        "fingerprints": result.fingerprints,
        "resume_fingerprint": result.resume_fingerprint,
        "grid": grid.to_config(),
        "outputs": outputs,
        "failed": {l.name: l.error for l in result.failed()},
        "harmonization": result.harmonization.notes if result.harmonization else {},
    })

    console.print(_summary_table(result))
    for k, p in outputs.items():
        console.print(f"- {k}: {p}")
    console.print("[green]Done." if not result.failed() else f"[yellow]Done with {len(result.failed())} failed combo(s).")
    close_logger()


if __name__ == "__main__":
    main()
