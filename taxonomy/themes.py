"""Theme taxonomy for alumni memories.

Each theme lists single keywords and multi-word phrases. Phrases weigh more
than keywords when scoring. Order matters: it breaks ties between themes.
"""

THEME_TAXONOMY = [
    {
        "id": "nostalgia",
        "keywords": [
            # Core nostalgia terms
            "nostalgia", "nostalgic", "remember", "recall", "relive", "miss", "memories", "memory",
            # Time phrases
            "school days", "those days", "good time", "great time", "best time", "best days",
            "golden period", "golden years", "golden days", "best years", "good old days",
            # Single tokens
            "days", "period", "time", "years", "moments", "childhood", "youth",
        ],
        "phrases": [
            "school days", "those days", "good time", "great time", "best time", "best days",
            "golden period", "golden years", "miss school", "best years", "good old days",
        ],
    },
    {
        "id": "friendship",
        "keywords": ["friend", "friends", "companion", "pal", "buddy", "gang", "group", "bond", "together", "close"],
        "phrases": ["close friends", "best friends", "school friends", "bus gang"],
    },
    {
        "id": "teachers",
        "keywords": ["teacher", "teachers", "ma'am", "sir", "maam", "madam", "principal", "class teacher", "mentor", "guide"],
        "phrases": ["english ma'am", "class teacher", "favorite teacher"],
    },
    {
        "id": "sports_athletics",
        "keywords": [
            "sport", "sports", "game", "games", "team", "match", "football", "cricket",
            "athletics", "tournament", "sports day",
        ],
        "phrases": ["sports day", "annual sports", "football match"],
    },
    {
        "id": "academic_excellence",
        "keywords": [
            "study", "studies", "exam", "exams", "teacher", "class", "learn", "learning",
            "education", "academic", "knowledge",
        ],
        "phrases": ["exam time", "class room", "study hours"],
    },
    {
        "id": "cultural_events",
        "keywords": ["fest", "festival", "performance", "dance", "drama", "music", "concert", "annual day", "cultural"],
        "phrases": ["annual day", "cultural fest", "annual function"],
    },
    {
        "id": "spiritual_growth",
        "keywords": ["prayer", "prayers", "mass", "chapel", "church", "faith", "god", "spiritual", "blessing"],
        "phrases": ["morning prayer", "chapel service"],
    },
    {
        "id": "house_rivalry",
        "keywords": [
            "house", "houses", "competition", "rivalry", "red house", "blue house",
            "green house", "yellow house", "inter-house",
        ],
        "phrases": ["house competition", "inter-house", "house points"],
    },
    {
        "id": "bus_memories",
        "keywords": ["bus", "buses", "transport", "journey", "travel", "route"],
        "phrases": ["bus ride", "bus gang", "school bus"],
    },
]

# Used when no theme matches at all
FALLBACK_TAG = "general_memory"

TAXONOMY_VERSION = "themes-v1"
