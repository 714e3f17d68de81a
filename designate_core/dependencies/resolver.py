"""
Dependency Resolver — checks one external prerequisite at a time.

Behavioral Contract:
- Each check is a read-only function of (cluster state, desired spec).
- Each check returns a DependencyOutcome; it never mutates watched resources
  and never raises for store failures, which come back as BACKEND_ERROR.
- Not-found, found-not-ready and found-ready stay distinct so that
  misconfiguration is told apart from a dependency still initializing.
"""

import logging
from typing import List

from designate_core.cluster.store import (
    ClusterStore,
    ResourceState,
    StoreError,
)
from designate_core.models.condition import ConditionType, Reason, Severity
from designate_core.models.entity import ManagedEntity
from designate_core.models.reconciler import DependencyOutcome, OutcomeCategory
from designate_core.models.resources import (
    DatabaseAccount,
    NetworkAttachmentDefinition,
    Secret,
    TransportURL,
)

log = logging.getLogger(__name__)

TRANSPORT_URL_KEY = "transport_url"
DATABASE_PASSWORD_KEY = "DatabasePassword"


def _satisfied(condition_type: ConditionType, **data) -> DependencyOutcome:
    return DependencyOutcome(
        condition_type=condition_type,
        category=OutcomeCategory.SATISFIED,
        data=data,
    )


def _unready(
    condition_type: ConditionType,
    reason: Reason,
    message: str,
    severity: Severity = Severity.INFO,
) -> DependencyOutcome:
    return DependencyOutcome(
        condition_type=condition_type,
        category=OutcomeCategory.UNREADY,
        reason=reason.value,
        severity=severity,
        message=message,
    )


def _misconfigured(
    condition_type: ConditionType, reason: Reason, message: str
) -> DependencyOutcome:
    return DependencyOutcome(
        condition_type=condition_type,
        category=OutcomeCategory.MISCONFIGURED,
        reason=reason.value,
        severity=Severity.WARNING,
        message=message,
    )


def _backend_error(
    condition_type: ConditionType, what: str, err: Exception
) -> DependencyOutcome:
    log.warning("Error retrieving %s: %s", what, err)
    return DependencyOutcome(
        condition_type=condition_type,
        category=OutcomeCategory.BACKEND_ERROR,
        reason=Reason.ERROR.value,
        severity=Severity.ERROR,
        message=f"Error retrieving {what}: {err}",
        error=str(err),
    )


class DependencyResolver:
    """Reads prerequisite resources from the cluster store."""

    def __init__(self, store: ClusterStore):
        self.store = store

    def check_input_secret(self, entity: ManagedEntity) -> DependencyOutcome:
        """The input secret exists and holds the service password key."""
        ctype = ConditionType.INPUT_READY
        name = entity.spec.secret
        required = [entity.spec.password_selectors.service]
        try:
            lookup = self.store.lookup(Secret, entity.namespace, name)
        except StoreError as e:
            return _backend_error(ctype, f"secret {name}", e)

        if not lookup.found:
            return _unready(
                ctype,
                Reason.INPUT_NOT_READY,
                f"Input data resources missing: secret/{name}",
            )

        secret: Secret = lookup.resource
        missing = [k for k in required if k not in secret.data]
        if missing:
            return _unready(
                ctype,
                Reason.INPUT_NOT_READY,
                f"Input data error occurred: secret/{name} missing keys "
                f"{', '.join(missing)}",
                severity=Severity.WARNING,
            )
        return _satisfied(
            ctype,
            service_password=secret.data[entity.spec.password_selectors.service],
        )

    def check_transport(self, entity: ManagedEntity) -> DependencyOutcome:
        """
        The referenced TransportURL is Ready and its credential secret holds
        the transport URL. No reference at all means not applicable.
        """
        ctype = ConditionType.TRANSPORT_URL_READY
        name = entity.spec.transport_ref
        if not name:
            return DependencyOutcome(
                condition_type=ctype, category=OutcomeCategory.NOT_APPLICABLE
            )

        try:
            lookup = self.store.lookup(TransportURL, entity.namespace, name)
        except StoreError as e:
            return _backend_error(ctype, f"transporturl {name}", e)

        if lookup.state != ResourceState.READY:
            return _unready(
                ctype,
                Reason.TRANSPORT_URL_NOT_READY,
                f"TransportURL {name} not yet ready"
                if lookup.found
                else f"TransportURL {name} not found",
            )

        transport: TransportURL = lookup.resource
        if not transport.secret_name:
            return _unready(
                ctype,
                Reason.TRANSPORT_URL_NOT_READY,
                f"TransportURL {name} has no secret yet",
            )
        try:
            secret = self.store.find(Secret, entity.namespace, transport.secret_name)
        except StoreError as e:
            return _backend_error(ctype, f"secret {transport.secret_name}", e)
        if secret is None or TRANSPORT_URL_KEY not in secret.data:
            return _unready(
                ctype,
                Reason.TRANSPORT_URL_NOT_READY,
                f"TransportURL secret {transport.secret_name} not found",
            )
        return _satisfied(ctype, transport_url=secret.data[TRANSPORT_URL_KEY])

    def check_database(self, entity: ManagedEntity) -> DependencyOutcome:
        """
        Two phases, both must hold: the account object is Ready, and its
        credential secret has been materialized.
        """
        ctype = ConditionType.DB_READY
        name = entity.spec.database_account
        try:
            lookup = self.store.lookup(DatabaseAccount, entity.namespace, name)
        except StoreError as e:
            return _backend_error(ctype, f"database account {name}", e)

        if lookup.state == ResourceState.NOT_FOUND:
            return _misconfigured(
                ctype,
                Reason.DB_ACCOUNT_NOT_FOUND,
                f"DatabaseAccount {name} not found",
            )
        if lookup.state == ResourceState.NOT_READY:
            return _unready(
                ctype, Reason.DB_NOT_READY, f"DatabaseAccount {name} not yet ready"
            )

        account: DatabaseAccount = lookup.resource
        try:
            secret = (
                self.store.find(Secret, entity.namespace, account.secret)
                if account.secret
                else None
            )
        except StoreError as e:
            return _backend_error(ctype, f"secret {account.secret}", e)
        if secret is None or DATABASE_PASSWORD_KEY not in secret.data:
            return _unready(
                ctype,
                Reason.DB_NOT_READY,
                f"DatabaseAccount {name} credentials not yet available",
            )
        return _satisfied(
            ctype,
            database_username=account.username,
            database_password=secret.data[DATABASE_PASSWORD_KEY],
        )

    def check_network_attachments(self, entity: ManagedEntity) -> DependencyOutcome:
        """Every named attachment resolves to an existing definition."""
        ctype = ConditionType.NETWORK_ATTACHMENTS_READY
        missing: List[str] = []
        resolved: List[str] = []
        for name in entity.spec.network_attachments:
            try:
                nad = self.store.find(
                    NetworkAttachmentDefinition, entity.namespace, name
                )
            except StoreError as e:
                return _backend_error(ctype, f"network-attachment-definition {name}", e)
            if nad is None:
                missing.append(name)
            else:
                resolved.append(nad.metadata.key)

        if missing:
            return _unready(
                ctype,
                Reason.NETWORK_ATTACHMENTS_NOT_FOUND,
                f"NetworkAttachment resources missing: {', '.join(missing)}",
                severity=Severity.WARNING,
            )
        return _satisfied(ctype, network_attachments=resolved)
