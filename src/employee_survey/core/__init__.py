"""
Core data and analytics layer.

This package contains:
- store: PostgREST client (paged selects, counts, inserts, deletes)
- filters: filter specifications and the pushable/residual filter tree
- population: eligible identities, population preview, filter options
- sampling: stratified proportional sampling for pulse surveys
- roster: replace-then-insert persistence of the selected identities
- survey_loader: surveys, questions and answers read from the store
- submission: token validation and anonymous submissions
- tokens: anonymous tokens and respondent links
- anonymity: the respondent threshold for showing results
- aggregation: anonymity-gated per-question results
- waves: question matching and trends across waves of a group
"""
