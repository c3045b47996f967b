from sso_deployer.provisioning.base import ProvisionOutcome, Provisioner
from sso_deployer.provisioning.permission_set import PermissionSetProvisioner
from sso_deployer.provisioning.role import RoleProvisioner

__all__ = ["PermissionSetProvisioner", "ProvisionOutcome", "Provisioner", "RoleProvisioner"]
