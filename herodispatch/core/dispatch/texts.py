"""Push notification texts (title, body) and payload ``type`` tags."""
from __future__ import annotations


def service_label(service_type: str) -> str:
    """``"jump_start"`` → ``"JUMP START"``"""
    return (service_type or "").replace("_", " ").upper()


def new_job_offer(service_type: str) -> tuple[str, str]:
    return f"New {service_label(service_type)} Job", "Tap to view details and accept"


NO_HEROES = ("No Heroes Available", "We couldn't find a hero right now. Please try again.")
HERO_ASSIGNED = ("Hero Assigned!", "Your hero is on the way. Track their progress in the app.")
HERO_JOB_CANCELLED = ("Job Cancelled", "The job has been cancelled.")


def customer_status_update(status: str, hero_name: str | None, service_type: str) -> tuple[str, str] | None:
    """Customer-facing text for a lifecycle transition; None = no push."""
    name = hero_name or "Your hero"
    if status == "en_route":
        return "Hero En Route", "Your hero is heading to your location."
    if status == "arrived":
        return "Your Hero Has Arrived!", f"{name} has arrived at your location."
    if status == "in_progress":
        service = (service_type or "service").replace("_", " ")
        return "Your Hero Has Started Your Service", f"{name} is now working on your {service}."
    if status == "completed":
        return "Service Complete", "Your service has been completed. Please rate your hero!"
    if status == "cancelled":
        return "Request Cancelled", "Your service request has been cancelled."
    return None
