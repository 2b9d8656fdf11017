#!/usr/bin/env python
# scripts/04_composition_pca.py

"""
Compositional comparison of extraction protocols.

This script:
1. Loads taxon read counts (or protein intensities) and the sample metadata
2. Cleans sample names, removes contaminants and the excluded individual(s)
3. Filters rare features and applies the centered log-ratio transform after
   multiplicative zero replacement
4. Runs a PCA on the CLR values and plots PC1/PC2
5. Computes Aitchison distances and tests each grouping variable with PERMANOVA
6. Draws a PCoA ordination of the Aitchison distances

Usage:
    python scripts/04_composition_pca.py [--config CONFIG_FILE] [--data-type reads|proteins]
"""

import sys
import argparse
from pathlib import Path

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
    load_protein_groups,
    remove_decoy_hits,
    extract_sample_matrix,
    clean_sample_ids,
    remove_contaminant_taxa,
    exclude_individuals,
    join_metadata,
    to_relative_abundance,
    filter_low_abundance,
    clr_transform,
    clr_pca,
    aitchison_distance,
    perform_permanova,
    plot_pca,
    plot_ordination
)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='CLR-PCA and PERMANOVA of extraction protocols')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--data-type', type=str, default='reads', choices=['reads', 'proteins'],
                        help='Input data to analyse (default: reads)')
    parser.add_argument('--input-file', type=str, default=None,
                        help='Path to read-count table or proteinGroups report (override config)')
    parser.add_argument('--metadata-file', type=str, default=None,
                        help='Path to metadata file (override config)')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Directory to save results (default: <results_dir>/composition_<data-type>)')
    parser.add_argument('--categorical-vars', type=str, default=None,
                        help='Comma-separated metadata variables to test (default: group_variables from config)')
    parser.add_argument('--permutations', type=int, default=None,
                        help='Number of PERMANOVA permutations (override config)')
    parser.add_argument('--n-loadings', type=int, default=5,
                        help='Number of feature loadings drawn on the PCA plot')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def load_feature_table(args, config):
    """Load and clean the feature x sample table for the requested data type."""
    clean_cfg = config['cleaning']

    if args.data_type == 'reads':
        reads_cfg = config['reads']
        table = load_read_counts(project_root / (args.input_file or reads_cfg['filename']),
                                 reads_cfg['taxon_column'])
        contaminants = list(clean_cfg['contaminant_taxa'] or [])
        if clean_cfg['contaminant_taxa_file']:
            contaminants += load_contaminant_list(project_root / clean_cfg['contaminant_taxa_file'])
        table = remove_contaminant_taxa(table, contaminants)
    else:
        prot_cfg = config['proteomics']
        report = load_protein_groups(project_root / (args.input_file or prot_cfg['protein_file']),
                                     prot_cfg['intensity_prefix'])
        report = remove_decoy_hits(report, id_column=prot_cfg['id_column'],
                                   decoy_prefixes=tuple(clean_cfg['decoy_prefixes']),
                                   contaminant_prefixes=tuple(clean_cfg['contaminant_prefixes']),
                                   flag_columns=tuple(clean_cfg['flag_columns']))
        table = extract_sample_matrix(report, prot_cfg['intensity_prefix'], prot_cfg['id_column'])

    return clean_sample_ids(table, clean_cfg['sample_suffix_patterns'])


def main():
    """Main function for the compositional analysis."""
    args = parse_args()
    setup_logger(args.log_file, args.log_level)

    config = load_config(project_root / args.config)
    meta_cfg = config['metadata']
    stats_cfg = config['statistics']
    viz_cfg = config['visualization']

    output_dir = project_root / (args.output_dir or
                                 Path(config['output']['results_dir']) / f'composition_{args.data_type}')
    figures_dir = output_dir / 'figures'
    tables_dir = output_dir / 'tables'
    for dir_path in [figures_dir, tables_dir]:
        dir_path.mkdir(exist_ok=True, parents=True)

    protocol_var = meta_cfg['protocol_column']
    fig_ext = viz_cfg['figure_format']
    dpi = viz_cfg['figure_dpi']
    permutations = args.permutations or stats_cfg['permutations']

    if args.categorical_vars:
        test_vars = [v.strip() for v in args.categorical_vars.split(',') if v.strip()]
    else:
        test_vars = list(meta_cfg['group_variables'])

    try:
        table = load_feature_table(args, config)
        metadata_df = load_metadata(project_root / (args.metadata_file or meta_cfg['filename']),
                                    meta_cfg['sample_id_column'])
        metadata_df = exclude_individuals(metadata_df, meta_cfg['exclude_individuals'],
                                          meta_cfg['individual_column'])
        table, metadata_df = join_metadata(table, metadata_df)
    except (FileNotFoundError, ValueError) as e:
        log_print(f"Error loading input data: {e}", level="error")
        sys.exit(1)

    # Empty samples have no composition
    empty = table.columns[table.sum(axis=0) == 0]
    if len(empty):
        log_print(f"Dropping {len(empty)} samples with no signal: {', '.join(empty)}", level="warning")
        table = table.drop(columns=empty)
        metadata_df = metadata_df.drop(index=empty)

    rel_abundance = to_relative_abundance(table)
    filtered = filter_low_abundance(rel_abundance,
                                    min_prevalence=config['reads']['min_prevalence'],
                                    min_abundance=config['reads']['min_abundance'])
    filtered = filtered.loc[:, filtered.sum(axis=0) > 0]
    metadata_df = metadata_df.loc[filtered.columns]

    clr_df = clr_transform(filtered)
    clr_df.to_csv(tables_dir / 'clr_values.csv')

    pca_result = clr_pca(clr_df, n_components=min(5, clr_df.shape[1]))
    pca_result['scores'].to_csv(tables_dir / 'pca_scores.csv')
    pca_result['loadings'].to_csv(tables_dir / 'pca_loadings.csv')
    pca_result['proportion_explained'].rename('Proportion explained').to_csv(tables_dir / 'pca_variance.csv')

    if pca_result['scores'].shape[1] >= 2:
        fig = plot_pca(pca_result, metadata_df, protocol_var, n_loadings=args.n_loadings,
                       palette=viz_cfg['palette'], output_file=figures_dir / f'clr_pca.{fig_ext}', dpi=dpi)
        plt.close(fig)

    distance_matrix = aitchison_distance(filtered)

    permanova_results = {}
    for var in test_vars:
        if var not in metadata_df.columns:
            log_print(f"Variable '{var}' not found in metadata", level="warning")
            continue
        permanova_results[var] = perform_permanova(distance_matrix, metadata_df, var,
                                                   permutations=permutations, seed=stats_cfg['random_seed'])

    permanova_df = pd.DataFrame(permanova_results).T
    permanova_df.index.name = 'Variable'
    permanova_df.to_csv(tables_dir / 'permanova_results.csv')

    if len(metadata_df) >= 3:
        fig = plot_ordination(distance_matrix, metadata_df, protocol_var, method='PCoA',
                              title=f'PCoA of Aitchison distances ({protocol_var})',
                              output_file=figures_dir / f'aitchison_pcoa.{fig_ext}', dpi=dpi)
        plt.close(fig)

    log_print(f"Compositional analysis complete. Results saved to {output_dir}", level="info")


if __name__ == "__main__":
    main()
