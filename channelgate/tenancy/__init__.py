from channelgate.tenancy.directory import ChannelCredentials, TenantDirectory
from channelgate.tenancy.resolver import ProviderContext, TenantResolver, normalize_host

__all__ = ["ChannelCredentials", "ProviderContext", "TenantDirectory", "TenantResolver", "normalize_host"]
