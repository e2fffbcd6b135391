"""
Imperative shell: the serialized tier service, configuration, capabilities and events.
"""
