"""Rendering sink: draws a suite's PlotSpecs over its result rows as SVG."""

import logging
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import pandas as pd  # noqa: E402
import seaborn as sns  # noqa: E402

logger = logging.getLogger(__name__)


def plot_frame(plot, rows):
    """Rows selected by `plot.filter` as a DataFrame, or None when nothing is left."""
    if plot.filter is not None:
        rows = [row for row in rows if plot.filter(row)]
    if not rows:
        return None
    df = pd.DataFrame(rows)
    missing = [c for c in plot.columns if c not in df.columns]
    if missing:
        raise KeyError(f"Plot '{plot.name or plot.caption}' needs missing columns {missing}")
    df = df.dropna(subset=[plot.x, plot.y])
    if df.empty:
        return None
    # categorical hue and facets, so numeric strokes get distinct colors
    for column in (plot.stroke, plot.fx, plot.fy):
        if column:
            df[column] = df[column].astype(str)
    return df


def render_plot(plot, rows, path, title=None):
    """Render one PlotSpec to `path`; returns the path or None if skipped."""
    df = plot_frame(plot, rows)
    if df is None:
        logger.info(f"Skipping plot '{plot.name or plot.caption}': no rows selected")
        return None

    sns.set_palette("colorblind")
    kind = "line" if plot.mark == "line" else "scatter"
    extra = {"marker": "o"} if kind == "line" else {}
    g = sns.relplot(
        data=df,
        x=plot.x,
        y=plot.y,
        hue=plot.stroke,
        col=plot.fx,
        row=plot.fy,
        kind=kind,
        facet_kws={"sharey": False},
        **extra,
    )
    g.set_axis_labels(plot.x_label or plot.x, plot.y_label or plot.y)
    if plot.log_x:
        g.set(xscale="log")
    if plot.log_y:
        g.set(yscale="log")
    if g.legend is not None and plot.stroke_label:
        g.legend.set_title(plot.stroke_label)
    for ax in g.axes.flat:
        ax.grid(alpha=0.3)

    heading = " | ".join(t for t in (title, plot.caption) if t)
    if heading:
        g.figure.suptitle(heading, y=1.02)

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    g.savefig(path, format="svg", bbox_inches="tight")
    plt.close(g.figure)
    logger.info(f"Plot saved to {path}")
    return path


def render_suite(suite, rows, config, name):
    """Driver sink: one SVG per PlotSpec under config.output_dir."""
    if not config.save_svg:
        logger.debug(f"{name}: save_svg is off, not rendering {len(suite.plots)} plots")
        return []
    title = None
    if rows:
        title = rows[0].get("gpuinfo", {}).get("description") or None
    written = []
    for i, plot in enumerate(suite.plots):
        stem = plot.name or f"plot{i}"
        path = render_plot(plot, rows, Path(config.output_dir) / f"{name}-{stem}.svg", title)
        if path is not None:
            written.append(path)
    return written
