#!/usr/bin/env python3
"""
O-Cloud Rollback Errors
Exception hierarchy shared by the rollback controller and its clients.
Every error carries a short reason code that ends up in terminal transitions
and audit records.
"""

from typing import Optional


class RollbackError(Exception):
    """Base class for all rollback tool errors"""
    reason = "rollback-error"

    def __init__(self, message: str = "", reason: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        if reason is not None:
            self.reason = reason


class ProbeTimeout(RollbackError):
    """A health probe did not complete in time"""
    reason = "probe-timeout"


class NoInstancesFound(RollbackError):
    """The selector matched no running instances"""
    reason = "no-instances-found"


class NoStableRevision(RollbackError):
    """History holds no earlier revision that was ever deployed"""
    reason = "no-stable-revision"


class RevisionNotFound(RollbackError):
    """Requested revision is not part of the release history"""
    reason = "revision-not-found"


class VerificationTimeout(RollbackError):
    """Rollback applied but the deployment never became healthy"""
    reason = "verification-timeout"


class AuditLogError(RollbackError):
    """Storage layer failure in the audit log"""
    reason = "audit-log-error"


class TransientError(RollbackError):
    """Infrastructure failure that may go away on retry"""
    reason = "transient-error"


class ClusterUnavailable(TransientError):
    """Kubernetes API call failed or timed out"""
    reason = "cluster-unavailable"


class ReleaseStoreError(TransientError):
    """helm call failed or timed out"""
    reason = "release-store-unavailable"


class RollbackRejected(TransientError):
    """Release store refused the rollback, e.g. another operation is in progress"""
    reason = "rollback-rejected"
