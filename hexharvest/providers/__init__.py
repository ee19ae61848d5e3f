from .base import (ContinuationState, ErrorDescriptor, Provider, ProviderOptions, ProviderResult, TimeWindow,
                   fetch_with_retry, localize, request_json)
from .flickr import FlickrProvider
from .gmap import GmapProvider
from .overpass import OverpassProvider

BUILTIN_PROVIDERS = (FlickrProvider, OverpassProvider, GmapProvider)
