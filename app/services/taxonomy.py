# =============================================================================
# Company Taxonomy — Allow-Lists for Planner Filters
# =============================================================================
#
# The planner may only filter on sectors, categories and business models
# that exist in the dataset's taxonomy. Anything else it invents is dropped
# by normalize_plan_taxonomy() in agents/planner.py.
#
# DESIGN DECISION: Static module-level constants.
# The taxonomy changes with a data migration, not at runtime, so it is
# versioned with the code.
# =============================================================================

SECTORS: tuple[str, ...] = (
    "Fintech",
    "Healthcare",
    "Developer Tools",
    "Enterprise Software",
    "Consumer",
    "Commerce",
    "Data & Analytics",
    "Security",
    "Infrastructure",
    "Climate & Energy",
    "Industrials",
    "Media & Entertainment",
    "Education",
    "Real Estate",
    "Legal",
)

CATEGORIES_BY_SECTOR: dict[str, tuple[str, ...]] = {
    "Fintech": (
        "Payments", "Lending", "Embedded Finance", "Banking Infrastructure",
        "Wealth Management", "Insurance Tech", "Accounting & Expense",
        "Capital Markets", "Crypto & Digital Assets", "Financial Planning",
        "Credit & Risk", "Corporate Cards",
    ),
    "Healthcare": (
        "Digital Health", "Telehealth", "Clinical Software",
        "Healthcare Analytics", "Mental Health", "Drug Discovery",
        "Medical Devices", "Health Insurance", "Patient Engagement",
        "Electronic Health Records", "Diagnostics", "Genomics",
    ),
    "Developer Tools": (
        "Engineering Tools", "DevOps & CI/CD", "Code Collaboration",
        "Testing & QA", "API Development", "Monitoring & Observability",
        "Database Tools", "Version Control", "Low-Code / No-Code",
        "AI Development Tools", "Documentation", "Developer Experience",
    ),
    "Enterprise Software": (
        "Project Management", "Collaboration", "Productivity", "CRM", "ERP",
        "HR & People Ops", "Customer Support", "Communication",
        "Business Intelligence", "Workflow Automation",
        "Knowledge Management", "Contract Management",
    ),
    "Consumer": (
        "Social", "Dating", "Fitness & Wellness", "Personal Finance",
        "Food & Delivery", "Travel", "Entertainment", "Gaming", "Music",
        "News & Media", "Photography", "Lifestyle",
    ),
    "Commerce": (
        "E-commerce Platform", "Retail Tech", "Marketplace",
        "Inventory & Fulfillment", "Supply Chain", "Wholesale & Distribution",
        "Point of Sale", "Subscription Commerce", "Social Commerce",
        "B2B Commerce", "Logistics", "Last-Mile Delivery",
    ),
    "Data & Analytics": (
        "Business Intelligence", "Data Infrastructure", "Data Integration",
        "Machine Learning Platform", "Data Governance", "Customer Analytics",
        "Product Analytics", "Marketing Analytics", "Predictive Analytics",
        "Data Visualization", "ETL & Data Pipelines", "AI/ML Infrastructure",
    ),
    "Security": (
        "Identity & Access", "Endpoint Security", "Cloud Security",
        "Application Security", "Network Security", "Threat Detection",
        "Compliance & GRC", "Fraud Prevention", "Privacy & Data Protection",
        "Security Operations", "Vulnerability Management", "Authentication",
    ),
    "Infrastructure": (
        "Cloud Infrastructure", "Compute", "Storage", "Networking",
        "Edge Computing", "Serverless", "Container Orchestration",
        "Infrastructure as Code", "CDN & Performance", "Messaging & Queues",
        "API Infrastructure", "Platform Engineering",
    ),
    "Climate & Energy": (
        "Clean Energy", "Carbon Management", "Energy Storage",
        "Electric Vehicles", "Sustainable Materials", "Climate Analytics",
        "Energy Efficiency", "Renewable Energy", "Grid Technology",
        "Water Tech", "Waste Management", "AgTech",
    ),
    "Industrials": (
        "Manufacturing", "Robotics", "Construction Tech", "Supply Chain",
        "Fleet Management", "Asset Management", "Facilities Management",
        "Industrial IoT", "Quality Control", "Procurement", "Field Service",
        "3D Printing",
    ),
    "Media & Entertainment": (
        "Streaming", "Gaming", "Content Creation", "Advertising Tech",
        "Influencer Marketing", "Podcasting", "Video Production",
        "Publishing", "Live Events", "Sports Tech", "AR/VR", "Music Tech",
    ),
    "Education": (
        "EdTech", "Learning Management", "Online Learning",
        "Corporate Training", "Tutoring", "Test Prep", "Early Childhood",
        "Higher Education", "Skills Development", "Credentialing",
        "Education Analytics", "Student Success",
    ),
    "Real Estate": (
        "Property Tech", "Property Management", "Real Estate Marketplace",
        "Mortgage Tech", "Commercial Real Estate", "Construction Tech",
        "Smart Buildings", "Rental Tech", "Real Estate Analytics",
        "Title & Escrow", "Home Services", "Co-living / Co-working",
    ),
    "Legal": (
        "Legal Practice Management", "Contract Management", "E-Discovery",
        "Legal Research", "Compliance", "IP Management", "Legal Marketplace",
        "Document Automation", "Litigation Support", "Regulatory Tech",
        "Legal Analytics", "Court Tech",
    ),
}

BUSINESS_MODELS: tuple[str, ...] = (
    "SaaS", "Marketplace", "Platform", "API-First", "Infrastructure",
    "Consumer App", "Hardware", "Services", "Open Source", "Freemium",
    "B2B", "B2C", "B2B2C", "Enterprise", "SMB", "Usage-Based",
    "Subscription", "Transactional",
)

# Flattened for membership checks; a category may belong to several sectors.
ALL_CATEGORIES: frozenset[str] = frozenset(
    category for categories in CATEGORIES_BY_SECTOR.values() for category in categories
)

SEARCHABLE_FIELDS: tuple[str, ...] = (
    "company_name (exact and fuzzy)",
    "tagline",
    "description",
    "product_description",
    "target_customer",
    "problem_solved",
    "differentiator",
    "niches",
    "sectors",
    "categories",
    "business_models",
)


def taxonomy_prompt() -> str:
    """Render the allow-lists as an indented outline for the planner."""
    lines = ["Sectors and Categories:"]
    for sector in SECTORS:
        lines.append(f"- {sector}")
        lines.extend(f"  - {category}" for category in CATEGORIES_BY_SECTOR[sector])
    lines.append("Business Models:")
    lines.append(", ".join(BUSINESS_MODELS))
    return "\n".join(lines)


def searchable_fields_prompt() -> str:
    return "Searchable fields in company dataset:\n" + "\n".join(
        f"- {name}" for name in SEARCHABLE_FIELDS
    )
