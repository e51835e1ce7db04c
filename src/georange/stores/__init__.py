from georange.stores.base import GeoStore, StoreChange, StoredSnapshot, StoreSnapshot
from georange.stores.firestore_rest import FirestoreRestStore
from georange.stores.memory import InMemoryStore

__all__ = ["FirestoreRestStore", "GeoStore", "InMemoryStore", "StoreChange", "StoredSnapshot", "StoreSnapshot"]
