from outreach.db.repo.jobs_repo import JobRecord, JobsRepo
from outreach.db.repo.preferences_repo import PreferencesRepo

__all__ = ["JobRecord", "JobsRepo", "PreferencesRepo"]
