from .base import Operation, OperationError, OperationResult
from .users import (
    ListUsers, GetUser, CreateUser, UpdateUser, DeleteUser,
    SetUserEnabled, RevokeSessions, AssignLicense, RemoveLicense,
)
from .groups import (
    ListGroups, GetGroup, CreateGroup, UpdateGroup, DeleteGroup,
    ListGroupMembers, AddGroupMember, RemoveGroupMember,
)
from .reports import (
    LicenseReport, InactiveUsers, GuestUsers, MfaStatus, UsageReport,
    SecureScore, SecurityAlerts, DirectoryAudit,
)
from .teams import ListTeams, ListChannels, CreateTeam, CreateChannel, AddTeamMember, ArchiveTeam
from .sharepoint import ListSites, GetSite, ListSiteLists, SiteStorage
from .onedrive import OneDriveQuota, ListDriveItems, LargeFiles
from .compliance import (
    ListEDiscoveryCases, CreateEDiscoveryCase, CloseEDiscoveryCase, ListRetentionLabels,
)

ALL_OPERATIONS = [
    ListUsers, GetUser, CreateUser, UpdateUser, DeleteUser,
    SetUserEnabled, RevokeSessions, AssignLicense, RemoveLicense,
    ListGroups, GetGroup, CreateGroup, UpdateGroup, DeleteGroup,
    ListGroupMembers, AddGroupMember, RemoveGroupMember,
    LicenseReport, InactiveUsers, GuestUsers, MfaStatus, UsageReport,
    SecureScore, SecurityAlerts, DirectoryAudit,
    ListTeams, ListChannels, CreateTeam, CreateChannel, AddTeamMember, ArchiveTeam,
    ListSites, GetSite, ListSiteLists, SiteStorage,
    OneDriveQuota, ListDriveItems, LargeFiles,
    ListEDiscoveryCases, CreateEDiscoveryCase, CloseEDiscoveryCase, ListRetentionLabels,
]

__all__ = [
    "Operation",
    "OperationError",
    "OperationResult",
    "ALL_OPERATIONS",
] + [op.__name__ for op in ALL_OPERATIONS]
