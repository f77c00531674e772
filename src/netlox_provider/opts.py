"""oslo.config options for embedding the provider in an oslo-based host.

The options live in a dedicated ``netlox`` group so they cannot clash with the
host's own settings.
"""

from oslo_config import cfg

from netlox_lb.config import (
    DEFAULT_CONFIG_NAMESPACE,
    DEFAULT_DOCUMENT,
    SERVICES_KEY,
    ProviderSettings,
)

GROUP = "netlox"

provider_opts = [
    cfg.StrOpt('config_namespace',
               default=DEFAULT_CONFIG_NAMESPACE,
               help='Namespace holding the cluster-scoped address pool '
                    'configuration document.'),
    cfg.StrOpt('config_map',
               default=DEFAULT_DOCUMENT,
               help='Name of the documents (ConfigMaps) holding pool '
                    'configuration and per-namespace service registries.'),
    cfg.StrOpt('services_key',
               default=SERVICES_KEY,
               help='Key inside the registry document that stores the '
                    'JSON-encoded service bindings.'),
    cfg.IntOpt('conflict_retries',
               default=3,
               min=0,
               help='How many times a registry write is re-applied after a '
                    'concurrent modification is detected.'),
    cfg.FloatOpt('request_timeout',
                 default=None,
                 help='Timeout in seconds for each store request when the '
                      'caller does not supply a deadline.'),
]


def register_provider_opts(conf=None):
    """Register the provider options with ``conf`` (``cfg.CONF`` by default)."""
    conf = cfg.CONF if conf is None else conf
    conf.register_opts(provider_opts, group=GROUP)
    return conf


def settings_from_conf(conf=None):
    """Build :class:`ProviderSettings` from registered oslo.config options.

    Args:
        conf: A ``cfg.ConfigOpts`` instance with :func:`register_provider_opts`
            already applied.

    Returns:
        ProviderSettings
    """
    conf = cfg.CONF if conf is None else conf
    group = conf[GROUP]
    return ProviderSettings(
        config_namespace=group.config_namespace,
        config_document=group.config_map,
        registry_document=group.config_map,
        services_key=group.services_key,
        conflict_retries=group.conflict_retries,
        request_timeout=group.request_timeout,
    )
