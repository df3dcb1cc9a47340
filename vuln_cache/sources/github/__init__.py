"""GitHub Security Advisory source: GraphQL cursor pagination with sub-list follow-ups"""

from .advisory_source import (
    GITHUB_GRAPHQL_URL,
    CWE_PAGE_SIZE,
    VULNERABILITY_PAGE_SIZE,
    GraphQLAdvisorySource,
    create_template_environment,
    format_github_date,
)

__all__ = [
    'GITHUB_GRAPHQL_URL',
    'CWE_PAGE_SIZE',
    'VULNERABILITY_PAGE_SIZE',
    'GraphQLAdvisorySource',
    'create_template_environment',
    'format_github_date',
]
