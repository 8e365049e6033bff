"""Static reference data: dungeons, realms, periods, achievements, specs and classes."""

# --------------------------------------------------------------------------
# Dungeons (MoP Challenge Mode)
# --------------------------------------------------------------------------
DUNGEONS: list[dict] = [
    {"id": 2, "name": "Temple of the Jade Serpent", "slug": "temple-of-the-jade-serpent"},
    {"id": 56, "name": "Stormstout Brewery", "slug": "stormstout-brewery"},
    {"id": 57, "name": "Gate of the Setting Sun", "slug": "gate-of-the-setting-sun"},
    {"id": 58, "name": "Shado-Pan Monastery", "slug": "shado-pan-monastery"},
    {"id": 59, "name": "Siege of Niuzao Temple", "slug": "siege-of-niuzao-temple"},
    {"id": 60, "name": "Mogu'shan Palace", "slug": "mogu-shan-palace"},
    {"id": 76, "name": "Scholomance", "slug": "scholomance"},
    {"id": 77, "name": "Scarlet Halls", "slug": "scarlet-halls"},
    {"id": 78, "name": "Scarlet Monastery", "slug": "scarlet-monastery"},
]

FALLBACK_PERIODS = [str(p) for p in range(1034, 1019, -1)]

# hand-picked abbreviations; other dungeons get an acronym
DUNGEON_SHORT_NAMES = {
    "temple-of-the-jade-serpent": "TJS",
    "stormstout-brewery": "SB",
    "shado-pan-monastery": "SPM",
    "mogu-shan-palace": "MSP",
    "siege-of-niuzao-temple": "SNT",
    "gate-of-the-setting-sun": "GSS",
    "scarlet-halls": "SH",
    "scarlet-monastery": "SM",
    "scholomance": "SCHOLO",
}

# --------------------------------------------------------------------------
# Realms. Keys are unique across regions; "slug" is the vendor slug.
# --------------------------------------------------------------------------
def _realm(rid: int, region: str, name: str, slug: str) -> dict:
    return {"id": rid, "region": region, "name": name, "slug": slug}


REALMS: dict[str, dict] = {
    # us
    "atiesh": _realm(4372, "us", "Atiesh", "atiesh"),
    "myzrael": _realm(4373, "us", "Myzrael", "myzrael"),
    "old-blanchy": _realm(4374, "us", "Old Blanchy", "old-blanchy"),
    "azuresong": _realm(4376, "us", "Azuresong", "azuresong"),
    "mankrik": _realm(4384, "us", "Mankrik", "mankrik"),
    "pagle": _realm(4385, "us", "Pagle", "pagle"),
    "ashkandi": _realm(4387, "us", "Ashkandi", "ashkandi"),
    "westfall": _realm(4388, "us", "Westfall", "westfall"),
    "whitemane": _realm(4395, "us", "Whitemane", "whitemane"),
    "faerlina": _realm(4408, "us", "Faerlina", "faerlina"),
    "grobbulus": _realm(4647, "us", "Grobbulus", "grobbulus"),
    "bloodsail-buccaneers": _realm(4648, "us", "Bloodsail Buccaneers", "bloodsail-buccaneers"),
    # OCE realms live under us with an -au suffix
    "remulos-au": _realm(4667, "us", "Remulos (AU)", "remulos-au"),
    "arugal-au": _realm(4669, "us", "Arugal (AU)", "arugal-au"),
    "yojamba-au": _realm(4670, "us", "Yojamba (AU)", "yojamba-au"),
    "skyfury": _realm(4725, "us", "Skyfury", "skyfury"),
    "sulfuras": _realm(4726, "us", "Sulfuras", "sulfuras"),
    "windseeker": _realm(4727, "us", "Windseeker", "windseeker"),
    "benediction": _realm(4728, "us", "Benediction", "benediction"),
    "earthfury": _realm(4731, "us", "Earthfury", "earthfury"),
    "maladath": _realm(4738, "us", "Maladath", "maladath"),
    "angerforge": _realm(4795, "us", "Angerforge", "angerforge"),
    "eranikus": _realm(4800, "us", "Eranikus", "eranikus"),
    "nazgrim": _realm(6359, "us", "Nazgrim", "nazgrim"),
    "galakras": _realm(6360, "us", "Galakras", "galakras"),
    "raden": _realm(6361, "us", "Ra-den", "raden"),
    "lei-shen": _realm(6362, "us", "Lei Shen", "lei-shen"),
    "immerseus": _realm(6363, "us", "Immerseus", "immerseus"),
    # eu
    "everlook": _realm(4440, "eu", "Everlook", "everlook"),
    "auberdine": _realm(4441, "eu", "Auberdine", "auberdine"),
    "lakeshire": _realm(4442, "eu", "Lakeshire", "lakeshire"),
    "chromie": _realm(4452, "eu", "Chromie", "chromie"),
    "pyrewood-village": _realm(4453, "eu", "Pyrewood Village", "pyrewood-village"),
    "mirage-raceway": _realm(4454, "eu", "Mirage Raceway", "mirage-raceway"),
    "razorfen": _realm(4455, "eu", "Razorfen", "razorfen"),
    "nethergarde-keep": _realm(4456, "eu", "Nethergarde Keep", "nethergarde-keep"),
    "sulfuron": _realm(4464, "eu", "Sulfuron", "sulfuron"),
    "golemagg": _realm(4465, "eu", "Golemagg", "golemagg"),
    "patchwerk": _realm(4466, "eu", "Patchwerk", "patchwerk"),
    "firemaw": _realm(4467, "eu", "Firemaw", "firemaw"),
    "flamegor": _realm(4474, "eu", "Flamegor", "flamegor"),
    "gehennas": _realm(4476, "eu", "Gehennas", "gehennas"),
    "venoxis": _realm(4477, "eu", "Venoxis", "venoxis"),
    "hydraxian-waterlords": _realm(4678, "eu", "Hydraxian Waterlords", "hydraxian-waterlords"),
    "mograine": _realm(4701, "eu", "Mograine", "mograine"),
    "amnennar": _realm(4703, "eu", "Amnennar", "amnennar"),
    "ashbringer": _realm(4742, "eu", "Ashbringer", "ashbringer"),
    "transcendence": _realm(4745, "eu", "Transcendence", "transcendence"),
    "earthshaker": _realm(4749, "eu", "Earthshaker", "earthshaker"),
    "giantstalker": _realm(4811, "eu", "Giantstalker", "giantstalker"),
    "mandokir": _realm(4813, "eu", "Mandokir", "mandokir"),
    "thekal": _realm(4815, "eu", "Thekal", "thekal"),
    "jindo": _realm(4816, "eu", "Jin'do", "jindo"),
    "shekzeer": _realm(6364, "eu", "Shek'zeer", "shekzeer"),
    "garalon": _realm(6365, "eu", "Garalon", "garalon"),
    "norushen": _realm(6366, "eu", "Norushen", "norushen"),
    "hoptallus": _realm(6367, "eu", "Hoptallus", "hoptallus"),
    "ook-ook": _realm(6368, "eu", "Ook Ook", "ook-ook"),
    # kr
    "shimmering-flats": _realm(4417, "kr", "Shimmering Flats", "shimmering-flats"),
    "lokholar": _realm(4419, "kr", "Lokholar", "lokholar"),
    "iceblood": _realm(4420, "kr", "Iceblood", "iceblood"),
    "ragnaros": _realm(4421, "kr", "Ragnaros", "ragnaros"),
    "frostmourne": _realm(4840, "kr", "Frostmourne", "frostmourne"),
    # tw
    "maraudon": _realm(4485, "tw", "Maraudon", "maraudon"),
    "ivus": _realm(4487, "tw", "Ivus", "ivus"),
    "wushoolay": _realm(4488, "tw", "Wushoolay", "wushoolay"),
    "zeliek": _realm(4489, "tw", "Zeliek", "zeliek"),
    "arathi-basin": _realm(5740, "tw", "Arathi Basin", "arathi-basin"),
    "murloc": _realm(5741, "tw", "Murloc", "murloc"),
    "golemagg-tw": _realm(5742, "tw", "Golemagg", "golemagg"),
    "windseeker-tw": _realm(5743, "tw", "Windseeker", "windseeker"),
}

# --------------------------------------------------------------------------
# Achievements feeding the character fingerprint
# --------------------------------------------------------------------------
ACHIEVEMENT_LEVEL_85 = 4826
ACHIEVEMENT_LEVEL_90 = 6193
HEROIC_DUNGEON_ACHIEVEMENTS = (6456, 6470, 6756, 6758, 6759, 6760, 6761, 6762, 6763)

# --------------------------------------------------------------------------
# Classes and specializations
# --------------------------------------------------------------------------
CLASS_IDS: dict[str, int] = {
    "Warrior": 1,
    "Paladin": 2,
    "Hunter": 3,
    "Rogue": 4,
    "Priest": 5,
    "Death Knight": 6,
    "Shaman": 7,
    "Mage": 8,
    "Warlock": 9,
    "Monk": 10,
    "Druid": 11,
}

# spec_id -> (class name, spec name)
SPECS: dict[int, tuple[str, str]] = {
    71: ("Warrior", "Arms"),
    72: ("Warrior", "Fury"),
    73: ("Warrior", "Protection"),
    65: ("Paladin", "Holy"),
    66: ("Paladin", "Protection"),
    70: ("Paladin", "Retribution"),
    253: ("Hunter", "Beast Mastery"),
    254: ("Hunter", "Marksmanship"),
    255: ("Hunter", "Survival"),
    259: ("Rogue", "Assassination"),
    260: ("Rogue", "Outlaw"),
    261: ("Rogue", "Subtlety"),
    256: ("Priest", "Discipline"),
    257: ("Priest", "Holy"),
    258: ("Priest", "Shadow"),
    250: ("Death Knight", "Blood"),
    251: ("Death Knight", "Frost"),
    252: ("Death Knight", "Unholy"),
    262: ("Shaman", "Elemental"),
    263: ("Shaman", "Enhancement"),
    264: ("Shaman", "Restoration"),
    62: ("Mage", "Arcane"),
    63: ("Mage", "Fire"),
    64: ("Mage", "Frost"),
    265: ("Warlock", "Affliction"),
    266: ("Warlock", "Demonology"),
    267: ("Warlock", "Destruction"),
    268: ("Monk", "Brewmaster"),
    269: ("Monk", "Windwalker"),
    270: ("Monk", "Mistweaver"),
    102: ("Druid", "Balance"),
    103: ("Druid", "Feral"),
    104: ("Druid", "Guardian"),
    105: ("Druid", "Restoration"),
}


def class_for_spec(spec_id: int | None) -> str | None:
    entry = SPECS.get(spec_id or 0)
    return entry[0] if entry else None


def class_id_for_spec(spec_id: int | None) -> int:
    name = class_for_spec(spec_id)
    return CLASS_IDS.get(name, 0) if name else 0


def spec_name(spec_id: int | None) -> str | None:
    entry = SPECS.get(spec_id or 0)
    return entry[1] if entry else None


def class_key(class_name: str) -> str:
    return class_name.strip().lower().replace(" ", "_")
