#!/usr/bin/env python
# scripts/01_read_counts.py

"""
Compare metagenomic read yields and taxonomic profiles between extraction protocols.

This script:
1. Loads the MALT/MEGAN taxon read-count export and the sample metadata
2. Strips sequencing suffixes from sample names and removes contaminant taxa
3. Drops the excluded individual(s) and joins counts to metadata
4. Summarizes assigned reads per protocol (mean, SD) and tests protocols
   pairwise (Wilcoxon rank-sum, BH correction) and with a mixed model
   (random intercept per individual)
5. Ranks the 20 most abundant taxa and plots their relative abundance

Usage:
    python scripts/01_read_counts.py [--config CONFIG_FILE]
"""

import sys
import argparse
from pathlib import Path

import numpy as np
import pandas as pd
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
    load_read_counts,
    load_contaminant_list,
    clean_sample_ids,
    remove_contaminant_taxa,
    exclude_individuals,
    join_metadata,
    to_relative_abundance,
    top_n_taxa,
    summarize_by_group,
    compare_groups,
    pairwise_wilcoxon,
    mixed_model_by_feature,
    plot_top_taxa_bar,
    plot_group_boxplot
)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Compare read counts between extraction protocols')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--counts-file', type=str, default=None,
                        help='Path to taxon read-count table (override config)')
    parser.add_argument('--metadata-file', type=str, default=None,
                        help='Path to metadata file (override config)')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Directory to save results (default: <results_dir>/read_counts)')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def read_yield_table(counts_df):
    """Per-sample read totals used for the protocol comparison."""
    totals = counts_df.sum(axis=0)
    return pd.DataFrame({
        'assigned_reads': totals,
        'log10_assigned_reads': np.log10(totals + 1),
        'n_taxa': (counts_df > 0).sum(axis=0),
    })


def main():
    """Main function to compare read counts between protocols."""
    args = parse_args()
    setup_logger(args.log_file, args.log_level)

    config = load_config(project_root / args.config)
    meta_cfg = config['metadata']
    clean_cfg = config['cleaning']
    reads_cfg = config['reads']
    stats_cfg = config['statistics']
    viz_cfg = config['visualization']

    output_dir = project_root / (args.output_dir or Path(config['output']['results_dir']) / 'read_counts')
    figures_dir = output_dir / 'figures'
    tables_dir = output_dir / 'tables'
    for dir_path in [figures_dir, tables_dir]:
        dir_path.mkdir(exist_ok=True, parents=True)

    protocol_var = meta_cfg['protocol_column']
    individual_var = meta_cfg['individual_column']
    fig_ext = viz_cfg['figure_format']
    dpi = viz_cfg['figure_dpi']

    try:
        counts_df = load_read_counts(project_root / (args.counts_file or reads_cfg['filename']),
                                     reads_cfg['taxon_column'])
        metadata_df = load_metadata(project_root / (args.metadata_file or meta_cfg['filename']),
                                    meta_cfg['sample_id_column'])
        contaminants = list(clean_cfg['contaminant_taxa'] or [])
        if clean_cfg['contaminant_taxa_file']:
            contaminants += load_contaminant_list(project_root / clean_cfg['contaminant_taxa_file'])
    except (FileNotFoundError, ValueError) as e:
        log_print(f"Error loading input data: {e}", level="error")
        sys.exit(1)

    # Clean sample names and drop contaminant taxa
    counts_df = clean_sample_ids(counts_df, clean_cfg['sample_suffix_patterns'])
    counts_df = remove_contaminant_taxa(counts_df, contaminants)

    metadata_df = exclude_individuals(metadata_df, meta_cfg['exclude_individuals'], individual_var)

    try:
        counts_df, metadata_df = join_metadata(counts_df, metadata_df)
    except ValueError as e:
        log_print(f"Error joining counts to metadata: {e}", level="error")
        sys.exit(1)

    counts_df.to_csv(tables_dir / 'clean_read_counts.csv')

    # Read yields per protocol
    yields = read_yield_table(counts_df)
    yields.to_csv(tables_dir / 'read_yields.csv')

    summary = summarize_by_group(yields, metadata_df, protocol_var, sample_axis='index')
    summary.to_csv(tables_dir / 'read_yield_summary.csv', index=False)

    yield_tests = compare_groups(yields, metadata_df, protocol_var, sample_axis='index',
                                 p_adjust=stats_cfg['p_adjust_method'], alpha=stats_cfg['alpha'])
    yield_tests.to_csv(tables_dir / 'read_yield_pairwise_wilcoxon.csv', index=False)

    mixed = mixed_model_by_feature(yields[['log10_assigned_reads', 'n_taxa']], metadata_df,
                                   protocol_var, individual_var, sample_axis='index',
                                   p_adjust=stats_cfg['p_adjust_method'])
    mixed.to_csv(tables_dir / 'read_yield_mixed_models.csv', index=False)

    pairwise = pairwise_wilcoxon(yields['log10_assigned_reads'], metadata_df[protocol_var],
                                 p_adjust=stats_cfg['p_adjust_method'], alpha=stats_cfg['alpha'])
    fig = plot_group_boxplot(yields['log10_assigned_reads'], metadata_df, protocol_var,
                             ylabel='log10 assigned reads', pairwise=pairwise, alpha=stats_cfg['alpha'],
                             palette=viz_cfg['palette'],
                             output_file=figures_dir / f'assigned_reads_by_protocol.{fig_ext}', dpi=dpi)
    plt.close(fig)

    # Top taxa by relative abundance
    rel_abundance = to_relative_abundance(counts_df)
    top_df = top_n_taxa(rel_abundance, n=reads_cfg['top_n'])
    top_df.to_csv(tables_dir / f'top{reads_cfg["top_n"]}_taxa.csv')

    fig = plot_top_taxa_bar(top_df, metadata_df, protocol_var,
                            title=f'Top {reads_cfg["top_n"]} taxa by {protocol_var}',
                            output_file=figures_dir / f'top_taxa_barplot.{fig_ext}', dpi=dpi)
    plt.close(fig)

    taxa_tests = compare_groups(top_df.drop(index='Other', errors='ignore'), metadata_df, protocol_var,
                                p_adjust=stats_cfg['p_adjust_method'], alpha=stats_cfg['alpha'])
    taxa_tests.to_csv(tables_dir / 'top_taxa_pairwise_wilcoxon.csv', index=False)

    log_print(f"Read count analysis complete. Results saved to {output_dir}", level="info")


if __name__ == "__main__":
    main()
