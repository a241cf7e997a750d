"""Standard caller personas used by the built-in goal tests."""

from agent_harness.schemas.persona_schema import (
    ChildData,
    Patience,
    Persona,
    PersonaInventory,
    PersonaTraits,
    Verbosity,
)

NORMAL_TRAITS = PersonaTraits()
VERBOSE_TRAITS = PersonaTraits(verbosity=Verbosity.VERBOSE, provides_extra_info=True)

SARAH_JOHNSON = Persona(
    name="Sarah Johnson",
    description="Parent with one child, new patient, Keystone First insurance",
    inventory=PersonaInventory(
        parent_first_name="Sarah",
        parent_last_name="Johnson",
        parent_phone="2155551234",
        parent_email="sarah@email.com",
        children=(
            ChildData(first_name="Emma", last_name="Johnson", date_of_birth="2014-03-15"),
        ),
        has_insurance=True,
        insurance_provider="Keystone First",
        preferred_location="Alleghany",
        preferred_date_range="2026-01-01 to 2026-01-15",
    ),
    traits=NORMAL_TRAITS,
)

MICHAEL_DAVIS = Persona(
    name="Michael Davis",
    description="Parent with two children, both new patients",
    inventory=PersonaInventory(
        parent_first_name="Michael",
        parent_last_name="Davis",
        parent_phone="2155559876",
        parent_email="mike@email.com",
        children=(
            ChildData(first_name="Jake", last_name="Davis", date_of_birth="2012-01-10"),
            ChildData(first_name="Lily", last_name="Davis", date_of_birth="2015-05-20"),
        ),
        has_insurance=True,
        insurance_provider="Aetna Better Health",
        preferred_location="Alleghany",
        preferred_date_range="2026-01-01 to 2026-01-15",
    ),
    traits=NORMAL_TRAITS,
)

JANE_SMITH = Persona(
    name="Jane Smith",
    description="Efficient parent who volunteers information up front",
    inventory=PersonaInventory(
        parent_first_name="Jane",
        parent_last_name="Smith",
        parent_phone="2155551111",
        parent_email="jane@email.com",
        children=(
            ChildData(first_name="Emma", last_name="Smith", date_of_birth="2014-02-05"),
        ),
        has_insurance=True,
        insurance_provider="Keystone First",
        preferred_location="Alleghany",
    ),
    traits=VERBOSE_TRAITS,
)

ROBERT_CHEN = Persona(
    name="Robert Chen",
    description="Returning patient with previous orthodontic treatment",
    inventory=PersonaInventory(
        parent_first_name="Robert",
        parent_last_name="Chen",
        parent_phone="2155552222",
        parent_email="robert.chen@email.com",
        children=(
            ChildData(
                first_name="Lucas", last_name="Chen", date_of_birth="2013-08-22",
                is_new_patient=False, had_braces_before=True,
            ),
        ),
        has_insurance=True,
        insurance_provider="Blue Cross Blue Shield",
        preferred_location="Philadelphia",
        preferred_time_of_day="morning",
        previous_visit_to_office=True,
        previous_orthodontic_treatment=True,
    ),
    traits=NORMAL_TRAITS,
)

MARIA_GARCIA = Persona(
    name="Maria Garcia",
    description="Parent without insurance coverage",
    inventory=PersonaInventory(
        parent_first_name="Maria",
        parent_last_name="Garcia",
        parent_phone="2155553333",
        parent_email="maria.garcia@email.com",
        children=(
            ChildData(first_name="Sofia", last_name="Garcia", date_of_birth="2015-11-30"),
        ),
        preferred_location="Alleghany",
        preferred_time_of_day="afternoon",
    ),
    traits=NORMAL_TRAITS,
)

DAVID_WILSON = Persona(
    name="David Wilson",
    description="Parent of a child with special needs",
    inventory=PersonaInventory(
        parent_first_name="David",
        parent_last_name="Wilson",
        parent_phone="2155554444",
        parent_email="david.wilson@email.com",
        children=(
            ChildData(
                first_name="Ethan", last_name="Wilson", date_of_birth="2014-06-15",
                special_needs="Autism - needs a quiet environment and extra patience",
            ),
        ),
        has_insurance=True,
        insurance_provider="United Healthcare",
        preferred_location="Alleghany",
        preferred_time_of_day="morning",
    ),
    traits=NORMAL_TRAITS,
)

TERSE_TOM = Persona(
    name="Tom Brown",
    description="Impatient parent who gives very brief answers and changes his mind",
    inventory=PersonaInventory(
        parent_first_name="Tom",
        parent_last_name="Brown",
        parent_phone="2155555555",
        parent_email="tom@email.com",
        children=(
            ChildData(first_name="Max", last_name="Brown", date_of_birth="2013-04-10"),
        ),
        preferred_time_of_day="afternoon",
    ),
    traits=PersonaTraits(
        verbosity=Verbosity.TERSE, patience=Patience.LOW, changes_answer=True
    ),
)

STANDARD_PERSONAS: dict[str, Persona] = {
    "sarah_johnson": SARAH_JOHNSON,
    "michael_davis": MICHAEL_DAVIS,
    "jane_smith": JANE_SMITH,
    "robert_chen": ROBERT_CHEN,
    "maria_garcia": MARIA_GARCIA,
    "david_wilson": DAVID_WILSON,
    "terse_tom": TERSE_TOM,
}


def get_persona(key: str) -> Persona:
    try:
        return STANDARD_PERSONAS[key]
    except KeyError:
        raise KeyError(
            f"Unknown persona '{key}'. Available: {', '.join(sorted(STANDARD_PERSONAS))}"
        ) from None
