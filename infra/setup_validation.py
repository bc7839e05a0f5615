from core.models import Practice

CHECK_COUNT = 7
COMMON_SERVICES = ("cleaning", "checkup", "consultation")


def validate_practice(practice: Practice) -> dict:
    issues = []
    recommendations = []

    if not (practice.name or "").strip():
        issues.append("Practice name is missing")
        recommendations.append("Set your practice name in admin setup")

    if not (practice.nexhealth_subdomain or "").strip():
        issues.append("NexHealth subdomain is missing")
        recommendations.append("Configure NexHealth subdomain in admin setup")

    if not (practice.nexhealth_location_id or "").strip():
        issues.append("NexHealth location ID is missing")
        recommendations.append("Set NexHealth location ID in admin setup")

    if not practice.selected_provider_ids:
        issues.append("No providers selected")
        recommendations.append("Select at least one provider for appointment booking")

    active = [m for m in practice.service_mappings if m.is_active]
    if not active:
        issues.append("No service mappings configured")
        recommendations.append("Create service mappings to enable AI appointment booking")
    else:
        spoken = [m.spoken_service_name.lower() for m in active]
        missing = [s for s in COMMON_SERVICES if not any(s in name for name in spoken)]
        if missing:
            issues.append(f"Missing common service mappings: {', '.join(missing)}")
            recommendations.append("Add mappings for common services callers ask for")

    if not (practice.vapi_assistant_id or "").strip():
        issues.append("AI assistant not configured")
        recommendations.append("Save the AI configuration to provision the assistant")

    if not (practice.timezone or "").strip():
        issues.append("Timezone not set")
        recommendations.append("Set practice timezone for accurate appointment scheduling")

    return {
        "is_complete": not issues,
        "completion_score": max(0, round((CHECK_COUNT - len(issues)) / CHECK_COUNT * 100)),
        "issues": issues,
        "recommendations": recommendations,
    }
