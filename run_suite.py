# -*- coding: utf-8 -*-
"""Benchmark runner (per-case summaries + tqdm progress).

Every case is solved for each combination of
  - thread count        (--threads 1,2,4)
  - partition count     (--partitions 0,4; 0 keeps the case's own boundaries)
  - line-search policy  (--line-search greedy,exhaustive)

and one backward pass (--algorithm slq|ilqr), recorded in every row.

Outputs:
  <outdir>/
    summary_all.csv          # all runs concatenated
    summary_agg.csv          # aggregated per (case, line_search, n_threads)
    <CaseName>/summary_all.csv
    <CaseName>/history.csv   # per-iteration history of every run

Usage (from this folder):
  python run_suite.py
  python run_suite.py --threads 1,4 --partitions 0,8 --outdir slq_results_test
"""

from __future__ import annotations

import argparse
import os
import time
from typing import Dict, List, Tuple

import numpy as np
import pandas as pd
from tqdm import tqdm

from errors import SLQError
from settings import Settings
from solver import SLQSolver
from systems import CASES, Case


def _partition_boundaries(case: Case, n_partitions: int) -> List[float]:
    if n_partitions <= 0:
        return list(case.partitions)
    return np.linspace(case.start_time, case.final_time, int(n_partitions) + 1).tolist()


def run_one(case: Case, settings: Settings, boundaries: List[float]) -> Tuple[Dict, pd.DataFrame]:
    solver = SLQSolver(
        case.dynamics, case.cost, case.operating_points,
        settings=settings, mode_schedule=case.mode_schedule, constraint=case.constraint,
    )
    t0 = time.perf_counter()
    solver_error = None
    try:
        _, perf = solver.run(case.start_time, case.x0, case.final_time, boundaries)
    except SLQError as e:
        perf = solver.performance_index()
        solver_error = repr(e)
    t1 = time.perf_counter()

    if solver.failure is not None:
        solver_error = f"{type(solver.failure).__name__}: {solver.failure}"

    row = {
        "status": solver.status.value,
        "success": bool(solver.status.converged and perf.is_finite()),
        "J_star": float(perf.total_cost),
        "ise1": float(perf.constraint1_ise),
        "ise2": float(perf.constraint2_ise),
        "n_iter": int(solver.iteration),
        "total_time": float(t1 - t0),
        "solver_error": solver_error,
    }
    row.update({f"time_{k}": float(v) for k, v in solver.timers.items()})
    if np.isfinite(case.expected_cost):
        row["cost_err"] = abs(float(perf.total_cost) - case.expected_cost)
    return row, solver.history_frame()


def run_case(
    case_name: str,
    *,
    outdir: str,
    threads: List[int],
    partitions: List[int],
    policies: List[str],
    max_iter: int,
    algorithm: str = "slq",
) -> pd.DataFrame:
    case = CASES[case_name]()
    case_dir = os.path.join(outdir, case_name)
    os.makedirs(case_dir, exist_ok=True)

    combos = [(p, n, pol) for p in partitions for n in threads for pol in policies]
    rows, histories = [], []
    bar = tqdm(combos, desc=f"[{case_name}] runs", leave=False)
    base_settings = Settings(**{**case.settings_overrides, "algorithm": algorithm})
    if max_iter >= 0:
        base_settings = base_settings.replace(max_num_iterations=max_iter)
    for n_part, n_threads, policy in bar:
        settings = base_settings.replace(n_threads=n_threads, ls_stepsize_greedy=(policy == "greedy"))
        boundaries = _partition_boundaries(case, n_part)
        row, hist = run_one(case, settings, boundaries)
        key = {
            "case": case_name,
            "n_partitions": len(boundaries) - 1,
            "n_threads": int(n_threads),
            "line_search": policy,
            "algorithm": algorithm,
        }
        rows.append({**key, **row})
        if not hist.empty:
            histories.append(hist.assign(**key))
        bar.set_postfix(threads=n_threads, P=len(boundaries) - 1, J=f"{row['J_star']:.5g}", st=row["status"])

    df = pd.DataFrame(rows)

    # runtime relative to the single-thread run with the same partitioning and policy
    base = df[df["n_threads"] == 1][["case", "n_partitions", "line_search", "total_time"]]
    base = base.rename(columns={"total_time": "time_base"})
    df = df.merge(base, on=["case", "n_partitions", "line_search"], how="left")
    df["speedup"] = df["time_base"] / df["total_time"]

    df.to_csv(os.path.join(case_dir, "summary_all.csv"), index=False)
    if histories:
        pd.concat(histories, ignore_index=True).to_csv(os.path.join(case_dir, "history.csv"), index=False)
    return df


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--outdir", type=str, default="slq_results", help="output directory")
    ap.add_argument("--threads", type=str, default="1,2,4", help="comma-separated thread counts")
    ap.add_argument("--partitions", type=str, default="0,4", help="comma-separated partition counts (0 = case default)")
    ap.add_argument("--line-search", type=str, default="greedy,exhaustive", help="comma-separated subset")
    ap.add_argument("--algorithm", type=str, default="slq", choices=["slq", "ilqr"], help="backward pass")
    ap.add_argument("--max-iter", type=int, default=-1, help="max SLQ iterations per run (-1 = case default)")
    ap.add_argument("--cases", type=str, default="", help="comma-separated case names (default: all)")
    args = ap.parse_args()

    outdir = args.outdir
    os.makedirs(outdir, exist_ok=True)

    threads = [int(s) for s in args.threads.split(",") if s.strip()]
    partitions = [int(s) for s in args.partitions.split(",") if s.strip()]
    policies = [s.strip() for s in args.line_search.split(",") if s.strip()]
    for p in policies:
        if p not in ("greedy", "exhaustive"):
            raise ValueError(f"Unknown line search: {p}. Options: ['greedy', 'exhaustive']")
    if 1 not in threads:
        threads = [1] + threads

    if args.cases.strip():
        wanted = [c.strip() for c in args.cases.split(",") if c.strip()]
        unknown = [c for c in wanted if c not in CASES]
        if unknown:
            raise ValueError(f"Unknown cases {unknown}. Available: {list(CASES)}")
        cases = wanted
    else:
        cases = list(CASES)

    all_rows = []
    for case_name in tqdm(cases, desc="Cases"):
        all_rows.append(run_case(
            case_name,
            outdir=outdir,
            threads=threads,
            partitions=partitions,
            policies=policies,
            max_iter=args.max_iter,
            algorithm=args.algorithm,
        ))

    df_all = pd.concat(all_rows, ignore_index=True)
    df_all.to_csv(os.path.join(outdir, "summary_all.csv"), index=False)

    agg_all = (
        df_all.groupby(["case", "line_search", "n_threads"])
              .agg(
                  n=("n_partitions", "count"),
                  success_rate=("success", "mean"),
                  J_median=("J_star", "median"),
                  J_spread=("J_star", lambda s: float(s.max() - s.min())),
                  iter_median=("n_iter", "median"),
                  time_median=("total_time", "median"),
                  speedup_median=("speedup", "median"),
              )
              .reset_index()
    )
    agg_all.to_csv(os.path.join(outdir, "summary_agg.csv"), index=False)

    print("\nSaved:")
    print(" ", os.path.join(outdir, "summary_all.csv"))
    print(" ", os.path.join(outdir, "summary_agg.csv"))
    for case_name in cases:
        print(" ", os.path.join(outdir, case_name, "summary_all.csv"))


if __name__ == "__main__":
    main()
