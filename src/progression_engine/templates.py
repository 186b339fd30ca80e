"""Offline unit templates.

These are the fixed directives and missions served when no generator model
is available, and the source of default steps when an older saved unit
lacks fields introduced later.
"""

from __future__ import annotations

from typing import Any

# Gate used for any legacy action that predates per-step prompts.
DEFAULT_CONFIRMATION_PROMPT = "Standard field verification"

# Packet-to-phase split used when a directive only carries a legacy packet.
PACKET_PHASE_SHARES = (0.2, 0.5, 0.2)
PACKET_SHARED_PORTION = 0.9

LEGACY_MISSION_XP = 500

DEFAULT_RECON_ACTION: dict[str, Any] = {
    "name": "Sync Geometry",
    "task": "Confirm location and time window anchors.",
    "priority": "High",
}

MISSION_TEMPLATES: dict[str, list[dict[str, str]]] = {
    "EVIDENCE_FIRST": [
        {"name": "Sync Geometry", "task": "Confirm location and time window anchors.", "priority": "High"},
        {"name": "Visual Telemetry", "task": "Capture photo or video evidence with metadata.", "priority": "High"},
        {"name": "Witness Ledger", "task": "Identify witness and record encrypted contact hash.", "priority": "Medium"},
        {"name": "Factual Synthesis", "task": "Create a short neutral factual narrative.", "priority": "Medium"},
        {"name": "Ledger Commit", "task": "Submit forensic report with tags and category.", "priority": "High"},
    ],
    "COMMUNITY_FIRST": [
        {"name": "Impact Mapping", "task": "Identify impacted groups (neighbors, schools, riders).", "priority": "High"},
        {"name": "Resource Locating", "task": "Locate local support nodes (NGOs, agencies).", "priority": "Medium"},
        {"name": "Draft Pulse", "task": "Draft a non-violent communal outreach message.", "priority": "Medium"},
        {"name": "Sync Confirmations", "task": "Collect 2 confirmations or field tips from members.", "priority": "Medium"},
        {"name": "Communal Dispatch", "task": "Submit report and share mapped resource list.", "priority": "High"},
    ],
    "SYSTEMS_FIRST": [
        {"name": "Node Identification", "task": "Identify responsible agency or corporate entity.", "priority": "High"},
        {"name": "Protocol Audit", "task": "Gather the specific policy or rule that applies.", "priority": "Medium"},
        {"name": "Violation Logging", "task": "Document specific structural violation indicators.", "priority": "High"},
        {"name": "Escalation Plan", "task": "Create tactical escalation plan (who/when/proof).", "priority": "Medium"},
        {"name": "Systemic Commit", "task": "Submit report and generate follow-up directive.", "priority": "High"},
    ],
}

MISSION_REWARD_CURRENCY = 200


def _step(step_id: str, name: str, task: str, instruction: str, order: int, proof: str | None) -> dict[str, Any]:
    return {
        "id": step_id,
        "name": name,
        "task": task,
        "instruction": instruction,
        "order": order,
        "proof": proof,
    }


DIRECTIVE_TEMPLATES: dict[str, dict[str, Any]] = {
    "Environment": {
        "id": "DIR-OFF-001",
        "title": "LOCAL_BUFFER: Drainage Audit",
        "phases": [
            {
                "id": "phase-recon-001",
                "name": "Initial Reconnaissance",
                "kind": "RECON",
                "description": "Survey the target area and identify potential discharge points.",
                "compensation": (30, 10),
                "steps": [
                    _step(
                        "step-recon-1",
                        "Locate Discharge Points",
                        "Identify all visible outflow valves and drainage channels in the target area.",
                        "Walk the perimeter and mark all discharge points on a map or notes.",
                        1,
                        "text",
                    ),
                    _step(
                        "step-recon-2",
                        "Assess Safety Conditions",
                        "Check for visible chemical hazards, warning signs, or restricted access areas.",
                        "Document any safety concerns or barriers to access.",
                        2,
                        "photo",
                    ),
                ],
            },
            {
                "id": "phase-exec-001",
                "name": "Evidence Collection",
                "kind": "EXECUTION",
                "description": "Capture visual and environmental evidence of discharge activity.",
                "compensation": (75, 25),
                "steps": [
                    _step(
                        "step-exec-1",
                        "Capture Outflow Images",
                        "Take 3 high-fidelity photos of outflow residue with timestamps.",
                        "Ensure photos show clear detail of any discharge material or residue.",
                        1,
                        "photo",
                    ),
                    _step(
                        "step-exec-2",
                        "Document Location Metadata",
                        "Record GPS coordinates and exact location details.",
                        "Note building address, nearest landmarks, and access points.",
                        2,
                        "text",
                    ),
                    _step(
                        "step-exec-3",
                        "Log Timestamp Evidence",
                        "Document the time of observation and any activity patterns.",
                        "Note if discharge is continuous, intermittent, or one-time.",
                        3,
                        "text",
                    ),
                ],
            },
            {
                "id": "phase-verify-001",
                "name": "Verification & Validation",
                "kind": "VERIFICATION",
                "description": "Verify evidence quality and cross-reference with public records.",
                "compensation": (30, 10),
                "steps": [
                    _step(
                        "step-verify-1",
                        "Review Evidence Quality",
                        "Ensure all photos are clear and metadata is complete.",
                        "Check that images show identifiable features and timestamps are accurate.",
                        1,
                        None,
                    ),
                    _step(
                        "step-verify-2",
                        "Submit Proof Package",
                        "Upload all collected evidence to the ledger.",
                        "Combine photos, location data, and notes into a single submission.",
                        2,
                        "photo",
                    ),
                ],
            },
            {
                "id": "phase-complete-001",
                "name": "Completion & Reward",
                "kind": "COMPLETION",
                "description": "Final review and compensation distribution.",
                "compensation": (15, 5),
                "steps": [
                    _step(
                        "step-complete-1",
                        "Confirm Work Completion",
                        "Review all phases and confirm directive completion.",
                        "Verify all evidence has been submitted and phases are marked complete.",
                        1,
                        None,
                    ),
                ],
            },
        ],
    },
    "Infrastructure": {
        "id": "DIR-OFF-002",
        "title": "LOCAL_BUFFER: Signal Parity",
        "phases": [
            {
                "id": "phase-recon-002",
                "name": "Signal Survey",
                "kind": "RECON",
                "description": "Identify the intersection and the signals under review.",
                "compensation": (20, 6),
                "steps": [
                    _step(
                        "step-recon-1",
                        "Identify Intersection",
                        "Confirm the intersection and every signal head in scope.",
                        "Record street names and signal positions.",
                        1,
                        "text",
                    ),
                    _step(
                        "step-recon-2",
                        "Check Safe Vantage Point",
                        "Find a position that keeps you clear of traffic.",
                        "Stay on the sidewalk; never enter the roadway.",
                        2,
                        None,
                    ),
                ],
            },
            {
                "id": "phase-exec-002",
                "name": "Cycle Timing",
                "kind": "EXECUTION",
                "description": "Measure signal cycle timing against the published schedule.",
                "compensation": (50, 15),
                "steps": [
                    _step(
                        "step-exec-1",
                        "Record Cycle Video",
                        "Film two full signal cycles.",
                        "Keep the timestamp overlay visible for the whole recording.",
                        1,
                        "video",
                    ),
                    _step(
                        "step-exec-2",
                        "Log Phase Durations",
                        "Write down green, amber and red durations.",
                        "Use the video to confirm every duration.",
                        2,
                        "text",
                    ),
                ],
            },
            {
                "id": "phase-verify-002",
                "name": "Schedule Comparison",
                "kind": "VERIFICATION",
                "description": "Compare measured timing with the municipal public ledger.",
                "compensation": (20, 6),
                "steps": [
                    _step(
                        "step-verify-1",
                        "Compare With Schedule",
                        "Note any deviation from the published timing plan.",
                        "Flag deviations longer than two seconds.",
                        1,
                        "text",
                    ),
                ],
            },
            {
                "id": "phase-complete-002",
                "name": "Completion & Reward",
                "kind": "COMPLETION",
                "description": "Final review and compensation distribution.",
                "compensation": (10, 3),
                "steps": [
                    _step(
                        "step-complete-1",
                        "Confirm Work Completion",
                        "Review all phases and confirm directive completion.",
                        "Verify all evidence has been submitted and phases are marked complete.",
                        1,
                        None,
                    ),
                ],
            },
        ],
    },
}

DEFAULT_DIRECTIVE_CATEGORY = "Environment"

LEGACY_VERIFICATION_STEP = _step(
    "step-verify-1",
    "Submit Evidence",
    "Upload all collected proof materials.",
    "Submit photos, videos, or text evidence collected during execution.",
    1,
    "photo",
)

LEGACY_COMPLETION_STEP = _step(
    "step-complete-1",
    "Confirm Completion",
    "Review and confirm all work is complete.",
    "Verify all phases are complete and submit for rewards.",
    1,
    None,
)
