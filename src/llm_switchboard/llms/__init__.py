"""
Provider adapters and the normalized message model.

'llms.base' holds the provider-agnostic message and request models,
'llms.adapter' the 'ProviderAdapter' ABC, and 'llms.factory' the
'AdapterFactory' that picks a concrete adapter for a 'ProviderSelection'.
"""
