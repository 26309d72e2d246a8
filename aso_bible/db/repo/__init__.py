from aso_bible.db.repo.overrides_repo import OverridesRepo
from aso_bible.db.repo.profiles_repo import ProfilesRepo

__all__ = ["OverridesRepo", "ProfilesRepo"]
