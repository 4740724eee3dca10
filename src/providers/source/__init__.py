"""External source adapters (music catalog and event/ticketing).

SpotifyProvider implements ICatalogSource; TicketmasterProvider implements
IEventSource.  Both route every request through a ResiliencePipeline.
"""
