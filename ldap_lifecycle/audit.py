"""
Account audit classification.

Users below an excluded OU or in an excluded group are dropped. Every
remaining user becomes one AuditReportRow flagged privileged or not. An
explicit privileged account list, when configured, replaces the group test
entirely.
"""

import logging
from typing import Iterable, List, Sequence, Tuple

from ldap_lifecycle.config import AuditPolicy
from ldap_lifecycle.models import AuditReportRow, NormalizedUser
from ldap_lifecycle.normalizer import group_short_names

logger = logging.getLogger(__name__)


def _folded(names: Iterable[str]) -> set:
    return {name.casefold() for name in names if name}


def in_excluded_ou(user: NormalizedUser, excluded_ous: Sequence[str]) -> bool:
    return any(ou and ou in user.distinguished_name for ou in excluded_ous)


def classify(users: Iterable[NormalizedUser], excluded_ous: Sequence[str], excluded_group_dns: Sequence[str],
             privileged_group_dns: Sequence[str], privileged_accounts: Sequence[str]) -> List[AuditReportRow]:
    """
    Filter users by the exclusion rules and label the survivors.

    Args:
        users: Normalized directory users
        excluded_ous: OU strings matched as substrings of the user DN
        excluded_group_dns: Group DNs whose members are dropped
        privileged_group_dns: Group DNs whose members are privileged
        privileged_accounts: Login names that are privileged; overrides the groups when non-empty

    Returns:
        One AuditReportRow per surviving user, in input order
    """
    excluded_groups = _folded(group_short_names(excluded_group_dns))
    privileged_groups = _folded(group_short_names(privileged_group_dns))
    explicit_accounts = _folded(privileged_accounts or ())

    rows = []
    for user in users:
        if in_excluded_ou(user, excluded_ous):
            continue

        groups = _folded(user.member_of)
        if groups & excluded_groups:
            continue

        if explicit_accounts:
            privileged = user.sam_account_name.casefold() in explicit_accounts
        else:
            privileged = bool(groups & privileged_groups)

        rows.append(AuditReportRow(
            sam_account_name=user.sam_account_name,
            is_privileged=privileged,
            display_name=user.display_name,
            is_enabled=user.is_enabled,
        ))

    logger.info(f"Audit classification kept {len(rows)} accounts")
    return rows


def classify_with_policy(users: Iterable[NormalizedUser], policy: AuditPolicy) -> List[AuditReportRow]:
    return classify(users, policy.excluded_ous, policy.excluded_groups,
                    policy.privileged_groups, policy.privileged_accounts)


def audit_sort_key(row: AuditReportRow) -> Tuple[bool, bool, str]:
    """Enabled first, then privileged first, then login ascending ignoring case."""
    return (not row.is_enabled, not row.is_privileged, row.sam_account_name.casefold())


def sort_report_rows(rows: Iterable[AuditReportRow]) -> List[AuditReportRow]:
    return sorted(rows, key=audit_sort_key)


def sort_report_rows_by_passes(rows: Iterable[AuditReportRow]) -> List[AuditReportRow]:
    """Same order as sort_report_rows, built from stable single-key passes."""
    ordered = sorted(rows, key=lambda row: row.sam_account_name.casefold())
    ordered = sorted(ordered, key=lambda row: row.is_privileged, reverse=True)
    return sorted(ordered, key=lambda row: row.is_enabled, reverse=True)
