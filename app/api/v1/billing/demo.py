"""Demonstration dataset served, clearly labelled, when the school API cannot be reached."""

DEMO_SCHOOL_YEAR = "2024-2025"

DEMO_CHILDREN = [
    {"id": 1, "prenom": "Aya", "nom": "Kouassi", "classeId": 1, "classeNom": "6ème", "statut": "pre_inscrit"},
    {"id": 2, "prenom": "Koffi", "nom": "Kouassi", "classeId": 2, "classeNom": "5ème", "statut": "inscrit"},
    {"id": 3, "prenom": "Jean", "nom": "Kouame", "classeId": 1, "classeNom": "6ème", "statut": "pre_inscrit"},
    {"id": 4, "prenom": "Marie", "nom": "Traore", "classeId": 1, "classeNom": "6ème", "statut": "inscrit"},
]

DEMO_LEDGER = [
    {"id": 1, "enfantId": 2, "montantTotal": 200000, "montantPaye": 200000, "anneeScolaire": DEMO_SCHOOL_YEAR},
    {"id": 4, "enfantId": 4, "montantTotal": 200000, "montantPaye": 200000, "anneeScolaire": DEMO_SCHOOL_YEAR},
    {"id": 7, "enfantId": 3, "montantTotal": 200000, "montantPaye": 75000, "anneeScolaire": DEMO_SCHOOL_YEAR},
]

DEMO_TARIFFS = [
    {"id": 1, "classeId": 1, "classeNom": "6ème", "tarif": 200000},
    {"id": 2, "classeId": 2, "classeNom": "5ème", "tarif": 200000},
]

DEMO_WARNING = "School API unavailable - showing demonstration data"

DEMO_GUARDIANS = {
    1: "Adjoua Kouassi",
    2: "Adjoua Kouassi",
    3: "Koffi Kouame",
    4: "Ibrahim Traore",
}
