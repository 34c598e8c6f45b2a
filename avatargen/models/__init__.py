# Database models package
from avatargen.models.job import AvatarGeneration

__all__ = [
    "AvatarGeneration",
]
