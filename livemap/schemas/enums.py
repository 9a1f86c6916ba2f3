from enum import Enum

class LocationVisibility(str, Enum):
    everyone = "everyone"
    friends = "friends"
    nobody = "nobody"

class FriendshipStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"

class ChangeOperation(str, Enum):
    insert = "INSERT"
    update = "UPDATE"
    delete = "DELETE"
