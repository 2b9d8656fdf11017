#!/usr/bin/env python
# scripts/03_protein_analysis.py

"""
Compare protein recovery between extraction protocols.

This script:
1. Loads the MaxQuant proteinGroups and peptides reports and the sample metadata
2. Removes reverse-database decoys and contaminants, cleans sample names and
   drops the excluded individual(s)
3. Counts identified proteins and peptides per sample
4. Adds the mean GRAVY (hydropathy) of the detected proteins per sample
5. Collapses Gene Ontology annotations onto higher-level terms and counts
   proteins per term and sample
6. Tests protocols pairwise (Wilcoxon rank-sum, BH correction) and with mixed
   models, and computes fold changes of protein intensities against the
   reference protocol
7. Plots identification counts, GRAVY and fold changes

Usage:
    python scripts/03_protein_analysis.py [--config CONFIG_FILE]
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
    read_table,
    load_metadata,
    load_protein_groups,
    load_peptides,
    remove_decoy_hits,
    extract_sample_matrix,
    clean_sample_ids,
    exclude_individuals,
    join_metadata,
    count_identifications,
    load_gravy,
    sample_gravy,
    parse_obo,
    collapse_go_terms,
    go_term_counts,
    summarize_by_group,
    compare_groups,
    pairwise_wilcoxon,
    mixed_model_by_feature,
    fold_change,
    plot_group_boxplot,
    plot_fold_change
)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Compare protein recovery between extraction protocols')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--protein-file', type=str, default=None,
                        help='Path to proteinGroups report (override config)')
    parser.add_argument('--peptide-file', type=str, default=None,
                        help='Path to peptides report (override config)')
    parser.add_argument('--metadata-file', type=str, default=None,
                        help='Path to metadata file (override config)')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Directory to save results (default: <results_dir>/proteins)')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def load_clean_matrix(report, prot_cfg, clean_cfg, protein_column, id_column):
    """Filter a MaxQuant report and return its cleaned feature x sample intensity matrix."""
    report = remove_decoy_hits(
        report,
        id_column=protein_column,
        decoy_prefixes=tuple(clean_cfg['decoy_prefixes']),
        contaminant_prefixes=tuple(clean_cfg['contaminant_prefixes']),
        flag_columns=tuple(clean_cfg['flag_columns'])
    )
    matrix = extract_sample_matrix(report, prot_cfg['intensity_prefix'], id_column)
    return clean_sample_ids(matrix, clean_cfg['sample_suffix_patterns'])


def run_go_analysis(protein_matrix, metadata_df, prot_cfg, stats_cfg, protocol_var, tables_dir):
    """Collapse GO annotations and compare per-term protein counts between protocols."""
    terms, edges = parse_obo(project_root / prot_cfg['go_obo_file'])
    annotations = read_table(project_root / prot_cfg['go_annotation_file'])

    collapsed = collapse_go_terms(
        annotations, terms, edges,
        target_terms=prot_cfg['go_target_terms'] or None,
        level=prot_cfg['go_level'],
        namespace=prot_cfg['go_namespace'],
        protein_column=prot_cfg['go_protein_column'],
        term_column=prot_cfg['go_term_column']
    )
    collapsed.to_csv(tables_dir / 'go_collapsed_annotations.csv', index=False)

    counts = go_term_counts(collapsed, protein_matrix)
    counts.insert(0, 'name', counts.index.map(terms['name']))
    counts.to_csv(tables_dir / 'go_term_counts.csv')
    counts = counts.drop(columns='name')

    summarize_by_group(counts, metadata_df, protocol_var).to_csv(
        tables_dir / 'go_term_count_summary.csv', index=False)
    compare_groups(counts, metadata_df, protocol_var, p_adjust=stats_cfg['p_adjust_method'],
                   alpha=stats_cfg['alpha']).to_csv(tables_dir / 'go_term_pairwise_wilcoxon.csv', index=False)


def main():
    """Main function to compare protein recovery between protocols."""
    args = parse_args()
    setup_logger(args.log_file, args.log_level)

    config = load_config(project_root / args.config)
    meta_cfg = config['metadata']
    clean_cfg = config['cleaning']
    prot_cfg = config['proteomics']
    stats_cfg = config['statistics']
    viz_cfg = config['visualization']

    output_dir = project_root / (args.output_dir or Path(config['output']['results_dir']) / 'proteins')
    figures_dir = output_dir / 'figures'
    tables_dir = output_dir / 'tables'
    for dir_path in [figures_dir, tables_dir]:
        dir_path.mkdir(exist_ok=True, parents=True)

    protocol_var = meta_cfg['protocol_column']
    individual_var = meta_cfg['individual_column']
    fig_ext = viz_cfg['figure_format']
    dpi = viz_cfg['figure_dpi']

    try:
        proteins = load_protein_groups(project_root / (args.protein_file or prot_cfg['protein_file']),
                                       prot_cfg['intensity_prefix'])
        peptides = load_peptides(project_root / (args.peptide_file or prot_cfg['peptide_file']),
                                 prot_cfg['intensity_prefix'])
        metadata_df = load_metadata(project_root / (args.metadata_file or meta_cfg['filename']),
                                    meta_cfg['sample_id_column'])
        protein_matrix = load_clean_matrix(proteins, prot_cfg, clean_cfg,
                                           prot_cfg['id_column'], prot_cfg['id_column'])
        peptide_matrix = load_clean_matrix(peptides, prot_cfg, clean_cfg,
                                           prot_cfg['peptide_protein_column'], prot_cfg['peptide_id_column'])
        gravy_scores = None
        if prot_cfg['gravy_file']:
            gravy_scores = load_gravy(project_root / prot_cfg['gravy_file'],
                                      prot_cfg['gravy_id_column'], prot_cfg['gravy_score_column'])
    except (FileNotFoundError, ValueError) as e:
        log_print(f"Error loading input data: {e}", level="error")
        sys.exit(1)

    metadata_df = exclude_individuals(metadata_df, meta_cfg['exclude_individuals'], individual_var)

    try:
        protein_matrix, metadata_df = join_metadata(protein_matrix, metadata_df)
        no_peptides = [s for s in metadata_df.index if s not in peptide_matrix.columns]
        if no_peptides:
            log_print(f"{len(no_peptides)} samples have no peptide intensities and are counted as 0 peptides: "
                      f"{', '.join(no_peptides)}", level="warning")
        peptide_matrix = peptide_matrix.reindex(columns=metadata_df.index, fill_value=0)
    except ValueError as e:
        log_print(f"Error joining protein data to metadata: {e}", level="error")
        sys.exit(1)

    protein_matrix.to_csv(tables_dir / 'protein_intensities_clean.csv')

    # Identifications per sample
    per_sample = pd.DataFrame({
        'n_proteins': count_identifications(protein_matrix),
        'n_peptides': count_identifications(peptide_matrix),
    })

    if gravy_scores is not None:
        per_sample['mean_gravy'] = sample_gravy(protein_matrix, gravy_scores)

    per_sample.to_csv(tables_dir / 'identifications_per_sample.csv')

    summarize_by_group(per_sample, metadata_df, protocol_var, sample_axis='index').to_csv(
        tables_dir / 'identification_summary.csv', index=False)

    compare_groups(per_sample, metadata_df, protocol_var, sample_axis='index',
                   p_adjust=stats_cfg['p_adjust_method'], alpha=stats_cfg['alpha']).to_csv(
        tables_dir / 'identification_pairwise_wilcoxon.csv', index=False)

    mixed_model_by_feature(per_sample, metadata_df, protocol_var, individual_var, sample_axis='index',
                           p_adjust=stats_cfg['p_adjust_method']).to_csv(
        tables_dir / 'identification_mixed_models.csv', index=False)

    for metric, label in [('n_proteins', 'Protein groups'), ('n_peptides', 'Peptides'), ('mean_gravy', 'Mean GRAVY')]:
        if metric not in per_sample.columns:
            continue
        pairwise = pairwise_wilcoxon(per_sample[metric], metadata_df[protocol_var],
                                     p_adjust=stats_cfg['p_adjust_method'], alpha=stats_cfg['alpha'])
        fig = plot_group_boxplot(per_sample[metric], metadata_df, protocol_var, ylabel=label,
                                 pairwise=pairwise, alpha=stats_cfg['alpha'], palette=viz_cfg['palette'],
                                 output_file=figures_dir / f'{metric}_by_protocol.{fig_ext}', dpi=dpi)
        plt.close(fig)

    # Fold changes against the reference protocol
    protocols = sorted(metadata_df[protocol_var].astype(str).unique())
    reference = stats_cfg['reference_protocol'] or protocols[0]
    if reference not in protocols:
        log_print(f"Reference protocol '{reference}' not found; using {protocols[0]}", level="warning")
        reference = protocols[0]

    for comparison in protocols:
        if comparison == reference:
            continue
        fc_df = fold_change(protein_matrix, metadata_df, protocol_var, reference, comparison,
                            pseudocount=stats_cfg['pseudocount'])
        fc_df.to_csv(tables_dir / f'fold_change_{comparison}_vs_{reference}.csv')
        fig = plot_fold_change(fc_df, title=f'{comparison} vs {reference}',
                               output_file=figures_dir / f'fold_change_{comparison}_vs_{reference}.{fig_ext}',
                               dpi=dpi)
        plt.close(fig)

    if prot_cfg['go_annotation_file'] and prot_cfg['go_obo_file']:
        try:
            run_go_analysis(protein_matrix, metadata_df, prot_cfg, stats_cfg, protocol_var, tables_dir)
        except (FileNotFoundError, ValueError) as e:
            log_print(f"Error in GO term analysis: {e}", level="error")
            sys.exit(1)
    else:
        log_print("No GO annotation/ontology files configured, skipping GO term analysis", level="info")

    log_print(f"Protein analysis complete. Results saved to {output_dir}", level="info")


if __name__ == "__main__":
    main()
