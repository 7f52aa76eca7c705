"""
Qualification question catalog.
Static interview configuration: steps, target fields, high-value optional
fields and the closed vocabulary for every enumerated field.
"""

QUALIFICATION_STEPS = [
    {
        "step": 1,
        "title": "Understanding the Problem",
        "prompt": (
            "Got it. And how would you describe the task or process this problem affects? "
            "For example, is it related to customer support, sales, finance, operations, "
            "or something else?"
        ),
        "target_fields": [
            "problemType",
            "problemTypeCategory",
            "jobFunction",
            "jobFunctionCategory",
            "industry",
            "industryCategory",
        ],
        "required_fields": ["problemType", "jobFunction"],
    },
    {
        "step": 2,
        "title": "Exploring Solution Preference",
        "prompt": (
            "Are you looking for an off-the-shelf solution you can plug in quickly, "
            "or are you open to building something more custom with internal or external help?"
        ),
        "target_fields": [
            "solutionType",
            "solutionTypeCategory",
            "implementationCapacity",
            "implementationCapacityCategory",
            "techCapability",
            "techCapabilityCategory",
        ],
        "required_fields": ["solutionType", "implementationCapacity"],
    },
    {
        "step": 3,
        "title": "Gauging Business Urgency",
        "prompt": (
            "How urgent is solving this for you right now? Are you just exploring, "
            "or is there active pressure to implement something soon?"
        ),
        "target_fields": [
            "businessUrgency",
            "businessUrgencyCategory",
            "decisionRole",
            "decisionRoleCategory",
        ],
        "required_fields": ["businessUrgency", "decisionRole"],
    },
    {
        "step": 4,
        "title": "Budget Clarity",
        "prompt": (
            "Do you already have a budget allocated for this AI project, "
            "or are you still figuring that out?"
        ),
        "target_fields": ["budgetStatus", "budgetStatusCategory", "budgetAmount"],
        "required_fields": ["budgetStatus"],
    },
]

# Optional fields worth one skippable follow-up per step (max 2 each)
HIGH_VALUE_OPTIONAL = {
    1: ["industryCategory", "jobFunctionCategory"],
    2: ["techCapabilityCategory"],
    3: ["decisionRoleCategory"],
    4: ["budgetAmount"],
}

# Allowed values per enumerated field. Fields mapped to None are free-form numbers.
FIELD_VOCABULARY = {
    "problemType": [
        "customer_support",
        "sales_automation",
        "data_analysis",
        "finance_management",
        "operations",
        "marketing",
        "hr_recruiting",
        "other",
    ],
    "problemTypeCategory": ["automation", "analytics", "management", "communication", "other"],
    "jobFunction": [
        "ceo",
        "cto",
        "vp",
        "vp_engineering",
        "director",
        "manager",
        "analyst",
        "consultant",
        "other",
    ],
    "jobFunctionCategory": ["executive", "management", "individual_contributor"],
    "industry": [
        "technology",
        "healthcare",
        "finance",
        "retail",
        "manufacturing",
        "education",
        "government",
        "other",
    ],
    "industryCategory": ["tech", "service", "product", "government"],
    "solutionType": ["off_shelf", "custom_build", "hybrid"],
    "solutionTypeCategory": ["buy", "build", "partner"],
    "implementationCapacity": ["internal_team", "external_help", "mixed", "unknown"],
    "implementationCapacityCategory": ["internal", "external", "hybrid"],
    "techCapability": ["high", "medium", "low", "unknown"],
    "techCapabilityCategory": ["technical", "non_technical", "mixed"],
    "businessUrgency": ["immediate", "3_months", "6_months", "1_year", "exploring"],
    "businessUrgencyCategory": ["urgent", "planned", "research"],
    "decisionRole": ["final_decision", "influence", "research", "unknown"],
    "decisionRoleCategory": ["decision_maker", "influencer", "researcher"],
    "budgetStatus": ["allocated", "planning", "exploring", "unknown"],
    "budgetStatusCategory": ["approved", "pending", "research"],
    "budgetAmount": None,
}

# Fields that drive the data-quality score of a finished qualification
CRITICAL_FIELDS = [
    "problemType",
    "jobFunction",
    "industry",
    "solutionType",
    "businessUrgency",
    "budgetStatus",
]

GREETING = "I'd like to understand your AI project needs through a few focused questions."

COMPLETION_MESSAGE = (
    "Perfect! I have everything I need. Let me connect you with the right AI vendors "
    "who specialize in your type of project."
)

OPTIONAL_SUFFIX = "(This helps me match you better, but feel free to skip if you're not sure.)"


def get_field_vocabulary(field: str):
    """Get allowed values for a field (None for numeric / free-form fields)."""
    return FIELD_VOCABULARY.get(field)
