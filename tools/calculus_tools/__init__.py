"""
Dental calculus extraction-protocol analysis toolkit.

This module provides functions for loading and cleaning instrument exports
(metagenomic read counts, MaxQuant protein/peptide reports, alignment quality
summaries), comparing extraction protocols statistically and plotting the results.

Usage:
    from calculus_tools import load_metadata, compare_groups, clr_transform, ...
"""

from .calculus_utils import (
    read_table,
    load_metadata,
    strip_sample_suffix,
    clean_sample_ids,
    load_read_counts,
    load_protein_groups,
    load_peptides,
    extract_sample_matrix,
    load_alignment_report,
    load_contaminant_list,
    remove_contaminant_taxa,
    remove_decoy_hits,
    exclude_individuals,
    join_metadata,
    to_relative_abundance,
    filter_low_abundance,
    count_identifications
)

from .calculus_stats import (
    adjust_pvalues,
    pairwise_wilcoxon,
    compare_groups,
    summarize_by_group,
    fold_change,
    fit_mixed_model,
    mixed_model_by_feature,
    perform_permanova
)

from .calculus_composition import (
    replace_zeros,
    clr_transform,
    clr_pca,
    aitchison_distance,
    bray_curtis_distance,
    top_n_taxa,
    aggregate_by_rank
)

from .calculus_proteins import (
    leading_accession,
    load_gravy,
    attach_gravy,
    sample_gravy,
    parse_obo,
    go_ancestors,
    go_depth,
    collapse_go_terms,
    go_term_counts
)

from .calculus_viz import (
    save_figure,
    plot_top_taxa_bar,
    plot_group_boxplot,
    plot_pca,
    plot_ordination,
    plot_fold_change,
    plot_metric_panels
)

from .config import load_config, DEFAULT_CONFIG
from .logger import setup_logger, log_print

__version__ = "0.1.0"

__all__ = [
    'read_table',
    'load_metadata',
    'strip_sample_suffix',
    'clean_sample_ids',
    'load_read_counts',
    'load_protein_groups',
    'load_peptides',
    'extract_sample_matrix',
    'load_alignment_report',
    'load_contaminant_list',
    'remove_contaminant_taxa',
    'remove_decoy_hits',
    'exclude_individuals',
    'join_metadata',
    'to_relative_abundance',
    'filter_low_abundance',
    'count_identifications',
    'adjust_pvalues',
    'pairwise_wilcoxon',
    'compare_groups',
    'summarize_by_group',
    'fold_change',
    'fit_mixed_model',
    'mixed_model_by_feature',
    'perform_permanova',
    'replace_zeros',
    'clr_transform',
    'clr_pca',
    'aitchison_distance',
    'bray_curtis_distance',
    'top_n_taxa',
    'aggregate_by_rank',
    'leading_accession',
    'load_gravy',
    'attach_gravy',
    'sample_gravy',
    'parse_obo',
    'go_ancestors',
    'go_depth',
    'collapse_go_terms',
    'go_term_counts',
    'save_figure',
    'plot_top_taxa_bar',
    'plot_group_boxplot',
    'plot_pca',
    'plot_ordination',
    'plot_fold_change',
    'plot_metric_panels',
    'load_config',
    'DEFAULT_CONFIG',
    'setup_logger',
    'log_print'
]
