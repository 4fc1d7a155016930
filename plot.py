#!/usr/bin/env python3
import os
import argparse
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt


# -----------------------------
# Utilities
# -----------------------------
def _ensure_dir(d):
    os.makedirs(d, exist_ok=True)
    return d

def _finite(series):
    s = pd.to_numeric(series, errors="coerce")
    return s[np.isfinite(s)]

def _case_display_name(c):
    return str(c).replace("_", " ")

def _policy_display_name(p):
    if p == "greedy":
        return "Greedy LS"
    if p == "exhaustive":
        return "Exhaustive LS"
    return str(p)

def _filter_success_only(df):
    if "success" not in df.columns:
        return df
    return df[df["success"] == True].copy()


# -----------------------------
# Plot primitives
# -----------------------------
def savefig(fig, path, dpi=220):
    fig.tight_layout()
    fig.savefig(path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    print("Saved:", path)

def _median_iqr(vals):
    vals = _finite(vals)
    if len(vals) == 0:
        return np.nan, np.nan, np.nan
    return np.percentile(vals, 50), np.percentile(vals, 25), np.percentile(vals, 75)

def _scaling(df_succ, cases_order, policies_order, outdir):
    """
    Thread scaling, one panel per case:
      speedup vs n_threads (median over partition counts, whisker = IQR).
    """
    n = len(cases_order)
    fig, axes = plt.subplots(1, n, figsize=(4.0*n, 3.4), sharey=True)
    if n == 1:
        axes = [axes]

    for ax, c in zip(axes, cases_order):
        sub = df_succ[df_succ["case"] == c]
        for pol in policies_order:
            sp = sub[sub["line_search"] == pol]
            threads = sorted(sp["n_threads"].unique().tolist())
            if not threads:
                continue
            st = np.array([_median_iqr(sp[sp["n_threads"] == t]["speedup"]) for t in threads], float)
            yerr = np.vstack([st[:, 0] - st[:, 1], st[:, 2] - st[:, 0]])
            ax.errorbar(threads, st[:, 0], yerr=yerr, fmt="o-", capsize=4, label=_policy_display_name(pol))
        ax.axhline(1.0, linewidth=1.0, alpha=0.4)
        ax.set_title(_case_display_name(c))
        ax.set_xlabel("threads")
        ax.grid(True, axis="y", alpha=0.25)

    axes[0].set_ylabel("speedup vs 1 thread")
    handles, labels = axes[0].get_legend_handles_labels()
    fig.legend(handles, labels, loc="upper center", ncol=2, frameon=False, bbox_to_anchor=(0.5, 1.05))
    out = os.path.join(outdir, "thread_scaling.png")
    savefig(fig, out)
    return out

def _cost_spread(df_succ, cases_order, outdir):
    """Final cost per run; every configuration of a case should land on the same value."""
    n = len(cases_order)
    fig, axes = plt.subplots(1, n, figsize=(4.0*n, 3.4))
    if n == 1:
        axes = [axes]

    for ax, c in zip(axes, cases_order):
        sub = df_succ[df_succ["case"] == c]
        labels = [f"P{p}/T{t}/{l[0]}" for p, t, l in zip(sub["n_partitions"], sub["n_threads"], sub["line_search"])]
        ax.plot(np.arange(len(sub)), sub["J_star"].values, "o")
        ax.set_xticks(np.arange(len(sub)))
        ax.set_xticklabels(labels, rotation=60, fontsize=7)
        ax.set_title(_case_display_name(c))
        ax.grid(True, axis="y", alpha=0.25)
        ax.ticklabel_format(axis="y", style="plain", useOffset=False)

    axes[0].set_ylabel("J*")
    out = os.path.join(outdir, "cost_by_config.png")
    savefig(fig, out)
    return out

def _history(outdir, cases_order, plots_dir):
    """Cost (and ISE1) per iteration from <outdir>/<case>/history.csv."""
    for c in cases_order:
        path = os.path.join(outdir, c, "history.csv")
        if not os.path.exists(path):
            continue
        h = pd.read_csv(path)
        fig, axes = plt.subplots(1, 2, figsize=(9.0, 3.4))
        for key, run in h.groupby(["n_partitions", "n_threads", "line_search"]):
            label = f"P{key[0]}/T{key[1]}/{key[2]}"
            axes[0].plot(run["iteration"], run["total_cost"], marker=".", label=label)
            axes[1].plot(run["iteration"], np.maximum(run["constraint1_ise"], 1e-16), marker=".", label=label)
        axes[0].set_xlabel("iteration")
        axes[0].set_ylabel("total cost")
        axes[1].set_xlabel("iteration")
        axes[1].set_ylabel("ISE type-1")
        axes[1].set_yscale("log")
        for ax in axes:
            ax.grid(True, alpha=0.25)
        axes[0].legend(fontsize=6)
        fig.suptitle(_case_display_name(c), y=1.03)
        savefig(fig, os.path.join(plots_dir, f"history_{c}.png"))


# -----------------------------
# Main
# -----------------------------
def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--csv", type=str, default=None,
                        help="Path to summary_all.csv. If omitted, uses <outdir>/summary_all.csv")
    parser.add_argument("--outdir", type=str, default="slq_results",
                        help="Runner output directory. Plots saved to <outdir>/plots/")
    parser.add_argument("--cases", type=str, default="",
                        help="Comma-separated cases. Default: all.")
    args = parser.parse_args()

    outdir = os.path.abspath(args.outdir)
    plots_dir = _ensure_dir(os.path.join(outdir, "plots"))

    csv_path = args.csv if args.csv is not None else os.path.join(outdir, "summary_all.csv")
    csv_path = os.path.abspath(csv_path)
    if not os.path.exists(csv_path):
        raise FileNotFoundError(f"Cannot find CSV: {csv_path}")

    df = pd.read_csv(csv_path)

    need = {"case", "n_threads", "n_partitions", "line_search", "J_star", "total_time", "speedup"}
    missing = sorted(list(need - set(df.columns)))
    if missing:
        raise ValueError(f"CSV missing columns: {missing}")

    cases = [c.strip() for c in args.cases.split(",") if c.strip()]
    if cases:
        df = df[df["case"].isin(cases)].copy()

    cases_order = sorted(df["case"].unique().tolist())
    policies_order = [p for p in ("greedy", "exhaustive") if p in set(df["line_search"])]

    df_succ = _filter_success_only(df)

    _scaling(df_succ, cases_order, policies_order, plots_dir)
    _cost_spread(df_succ, cases_order, plots_dir)
    _history(outdir, cases_order, plots_dir)

    print("\nDone. Plots saved in:", plots_dir)


if __name__ == "__main__":
    main()
