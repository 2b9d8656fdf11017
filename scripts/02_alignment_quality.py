#!/usr/bin/env python
# scripts/02_alignment_quality.py

"""
Compare ancient DNA alignment quality between extraction protocols.

This script:
1. Loads the merged alignment summary (endogenous content, fragment length,
   deamination, duplication) and the sample metadata
2. Strips sequencing suffixes from sample names and joins to metadata
3. Reports mean and standard deviation of each metric per protocol
4. Tests each metric between protocols (pairwise Wilcoxon with BH correction,
   mixed model with a random intercept per individual)
5. Plots one panel per metric

Usage:
    python scripts/02_alignment_quality.py [--config CONFIG_FILE]
"""

import sys
import argparse
from pathlib import Path

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

# Add tools directory to Python path
project_root = Path(__file__).resolve().parents[1]
sys.path.append(str(project_root / 'tools'))

from calculus_tools import (
    load_config,
    setup_logger,
    log_print,
    load_metadata,
    load_alignment_report,
    clean_sample_ids,
    exclude_individuals,
    join_metadata,
    summarize_by_group,
    compare_groups,
    mixed_model_by_feature,
    plot_metric_panels
)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Compare alignment quality between extraction protocols')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--alignment-file', type=str, default=None,
                        help='Path to alignment summary table (override config)')
    parser.add_argument('--metadata-file', type=str, default=None,
                        help='Path to metadata file (override config)')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Directory to save results (default: <results_dir>/alignment_quality)')
    parser.add_argument('--paired', action='store_true',
                        help='Use signed-rank tests matched on individual')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def main():
    """Main function to compare alignment quality metrics."""
    args = parse_args()
    setup_logger(args.log_file, args.log_level)

    config = load_config(project_root / args.config)
    meta_cfg = config['metadata']
    align_cfg = config['alignment']
    stats_cfg = config['statistics']
    viz_cfg = config['visualization']

    output_dir = project_root / (args.output_dir or Path(config['output']['results_dir']) / 'alignment_quality')
    figures_dir = output_dir / 'figures'
    tables_dir = output_dir / 'tables'
    for dir_path in [figures_dir, tables_dir]:
        dir_path.mkdir(exist_ok=True, parents=True)

    protocol_var = meta_cfg['protocol_column']
    individual_var = meta_cfg['individual_column']

    try:
        report = load_alignment_report(project_root / (args.alignment_file or align_cfg['filename']),
                                       align_cfg['sample_column'])
        metadata_df = load_metadata(project_root / (args.metadata_file or meta_cfg['filename']),
                                    meta_cfg['sample_id_column'])
    except (FileNotFoundError, ValueError) as e:
        log_print(f"Error loading input data: {e}", level="error")
        sys.exit(1)

    metrics = [m for m in align_cfg['metrics'] if m in report.columns]
    missing = sorted(set(align_cfg['metrics']) - set(metrics))
    if missing:
        log_print(f"Metrics not in alignment report: {', '.join(missing)}", level="warning")
    if not metrics:
        log_print("None of the configured alignment metrics were found", level="error")
        sys.exit(1)

    report = clean_sample_ids(report[metrics], config['cleaning']['sample_suffix_patterns'],
                              axis='index', aggfunc='mean')
    metadata_df = exclude_individuals(metadata_df, meta_cfg['exclude_individuals'], individual_var)

    try:
        report, metadata_df = join_metadata(report, metadata_df, sample_axis='index')
    except ValueError as e:
        log_print(f"Error joining alignment report to metadata: {e}", level="error")
        sys.exit(1)

    summary = summarize_by_group(report, metadata_df, protocol_var, sample_axis='index')
    summary.to_csv(tables_dir / 'alignment_metric_summary.csv', index=False)
    log_print(f"Summary of {len(metrics)} metrics over {len(report)} samples written", level="info")

    tests = compare_groups(report, metadata_df, protocol_var, sample_axis='index',
                           p_adjust=stats_cfg['p_adjust_method'], paired=args.paired,
                           subject_var=individual_var, alpha=stats_cfg['alpha'])
    tests.to_csv(tables_dir / 'alignment_pairwise_wilcoxon.csv', index=False)

    mixed = mixed_model_by_feature(report, metadata_df, protocol_var, individual_var,
                                   sample_axis='index', p_adjust=stats_cfg['p_adjust_method'])
    mixed.to_csv(tables_dir / 'alignment_mixed_models.csv', index=False)

    fig = plot_metric_panels(report, metadata_df, metrics, protocol_var, palette=viz_cfg['palette'],
                             output_file=figures_dir / f'alignment_metrics.{viz_cfg["figure_format"]}',
                             dpi=viz_cfg['figure_dpi'])
    plt.close(fig)

    log_print(f"Alignment quality analysis complete. Results saved to {output_dir}", level="info")


if __name__ == "__main__":
    main()
