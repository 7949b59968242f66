"""
Summative evaluations: creation rules, grading, auto-pass and CSV export.
"""
import csv
import io

from factories import auth, first_scenario, make_cohort, make_student

PASSING = {
    "leadership_scene_score": 3,
    "patient_assessment_score": 3,
    "patient_management_score": 2,
    "interpersonal_score": 2,
    "integration_score": 2,
}


def make_students(db, n, cohort=None):
    names = ["Adams", "Brooks", "Cruz", "Diaz", "Evans", "Fox", "Gray"]
    return [make_student(db, cohort, first_name=f"S{i}", last_name=names[i]) for i in range(n)]


def create_evaluation(client, token, scenario, students, **extra):
    payload = {
        "scenario_id": scenario.id,
        "evaluation_date": "2026-04-20",
        "examiner_name": "Dr. Hale",
        "student_ids": [s.id for s in students],
        **extra,
    }
    return client.post("/summative/evaluations", params=auth(token), json=payload)


class TestScenarios:
    def test_six_scenarios_seeded(self, client, tokens):
        rows = client.get("/summative/scenarios", params=auth(tokens["lead_instructor"])).json()
        assert [r["scenario_number"] for r in rows] == [1, 2, 3, 4, 5, 6]
        assert rows[5]["title"] == "Pediatric Emergency"

    def test_instructor_blocked(self, client, tokens):
        assert client.get("/summative/scenarios", params=auth(tokens["instructor"])).status_code == 403


class TestCreateEvaluation:
    def test_creates_blank_score_rows(self, client, db, users, tokens):
        cohort = make_cohort(db)
        students = make_students(db, 3, cohort)
        resp = create_evaluation(client, tokens["lead_instructor"], first_scenario(db), students, cohort_id=cohort.id)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "in_progress"
        assert body["examiner_email"] == users["lead_instructor"].email
        assert body["scenario"]["scenario_number"] == 1
        assert [s["student_name"] for s in body["scores"]] == ["S0 Adams", "S1 Brooks", "S2 Cruz"]
        assert all(s["result"] == "Pending" and s["total_score"] == 0 for s in body["scores"])

    def test_required_fields(self, client, db, tokens):
        scenario = first_scenario(db)
        students = make_students(db, 1)
        token = tokens["lead_instructor"]
        cases = [
            ({"scenario_id": None}, "Scenario is required"),
            ({"evaluation_date": None}, "Evaluation date is required"),
            ({"examiner_name": "  "}, "Examiner name is required"),
            ({"student_ids": []}, "At least one student is required"),
        ]
        for override, detail in cases:
            resp = create_evaluation(client, token, scenario, students, **override)
            assert resp.status_code == 400
            assert resp.json()["detail"] == detail

    def test_max_six_students(self, client, db, tokens):
        resp = create_evaluation(client, tokens["lead_instructor"], first_scenario(db), make_students(db, 7))
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Maximum 6 students per evaluation"

    def test_duplicate_student_ids_collapsed(self, client, db, tokens):
        students = make_students(db, 1)
        resp = create_evaluation(client, tokens["lead_instructor"], first_scenario(db), students * 3)
        assert len(resp.json()["scores"]) == 1

    def test_add_and_remove_students(self, client, db, tokens):
        students = make_students(db, 7)
        params = auth(tokens["lead_instructor"])
        evaluation = create_evaluation(client, tokens["lead_instructor"], first_scenario(db), students[:5]).json()
        url = f"/summative/evaluations/{evaluation['id']}/scores"
        assert client.post(url, params=params, json={"student_id": students[0].id}).json()["detail"] == "Student already in this evaluation"
        assert client.post(url, params=params, json={"student_id": students[5].id}).status_code == 200
        assert client.post(url, params=params, json={"student_id": students[6].id}).status_code == 400
        assert client.delete(url, params={**params, "student_id": students[0].id}).status_code == 200
        assert client.delete(url, params=params).status_code == 400
        assert len(client.get(f"/summative/evaluations/{evaluation['id']}", params=params).json()["scores"]) == 5


class TestGrading:
    def setup_evaluation(self, client, db, tokens, n=2):
        students = make_students(db, n)
        evaluation = create_evaluation(client, tokens["lead_instructor"], first_scenario(db), students).json()
        return evaluation, students

    def patch(self, client, tokens, evaluation, **body):
        return client.patch(f"/summative/evaluations/{evaluation['id']}/scores", params=auth(tokens["lead_instructor"]), json=body)

    def test_rubric_range_enforced(self, client, db, tokens):
        evaluation, students = self.setup_evaluation(client, db, tokens)
        assert self.patch(client, tokens, evaluation, student_id=students[0].id, integration_score=4).status_code == 422
        assert self.patch(client, tokens, evaluation, student_id=students[0].id, integration_score=-1).status_code == 422

    def test_requires_score_or_student_id(self, client, db, tokens):
        evaluation, _ = self.setup_evaluation(client, db, tokens)
        resp = self.patch(client, tokens, evaluation, integration_score=2)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Score ID or Student ID is required"

    def test_grading_complete_computes_pass(self, client, db, users, tokens):
        evaluation, students = self.setup_evaluation(client, db, tokens)
        row = self.patch(client, tokens, evaluation, student_id=students[0].id, grading_complete=True, **PASSING).json()
        assert row["total_score"] == 12
        assert row["passed"] is True
        assert row["result"] == "Pass"
        assert row["graded_by"] == users["lead_instructor"].id
        assert row["graded_at"] is not None

    def test_eleven_points_fails(self, client, db, tokens):
        evaluation, students = self.setup_evaluation(client, db, tokens)
        row = self.patch(client, tokens, evaluation, student_id=students[0].id, grading_complete=True, **{**PASSING, "integration_score": 1}).json()
        assert row["passed"] is False
        assert row["result"] == "Fail"

    def test_critical_failure_overrides_score(self, client, db, tokens):
        evaluation, students = self.setup_evaluation(client, db, tokens)
        perfect = {k: 3 for k in PASSING}
        row = self.patch(
            client, tokens, evaluation, student_id=students[0].id, grading_complete=True, critical_harmful_intervention=True, **perfect
        ).json()
        assert row["total_score"] == 15
        assert row["passed"] is False
        assert row["result"] == "Critical Fail"

    def test_pass_uses_previously_saved_scores(self, client, db, tokens):
        evaluation, students = self.setup_evaluation(client, db, tokens)
        saved = self.patch(client, tokens, evaluation, student_id=students[0].id, **PASSING).json()
        assert saved["passed"] is None
        row = self.patch(client, tokens, evaluation, score_id=saved["id"], grading_complete=True).json()
        assert row["passed"] is True

    def test_explicit_passed_is_respected(self, client, db, tokens):
        evaluation, students = self.setup_evaluation(client, db, tokens)
        row = self.patch(client, tokens, evaluation, student_id=students[0].id, grading_complete=True, passed=False, **PASSING).json()
        assert row["passed"] is False

    def test_evaluation_completes_when_all_graded(self, client, db, tokens):
        evaluation, students = self.setup_evaluation(client, db, tokens)
        params = auth(tokens["lead_instructor"])
        self.patch(client, tokens, evaluation, student_id=students[0].id, grading_complete=True, **PASSING)
        assert client.get(f"/summative/evaluations/{evaluation['id']}", params=params).json()["status"] == "in_progress"
        self.patch(client, tokens, evaluation, student_id=students[1].id, grading_complete=True, **PASSING)
        assert client.get(f"/summative/evaluations/{evaluation['id']}", params=params).json()["status"] == "completed"

    def test_null_critical_flag_rejected(self, client, db, tokens):
        evaluation, students = self.setup_evaluation(client, db, tokens)
        resp = self.patch(client, tokens, evaluation, student_id=students[0].id, critical_criteria_failed=None)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "critical_criteria_failed cannot be blank"

    def test_unknown_score(self, client, db, tokens):
        evaluation, _ = self.setup_evaluation(client, db, tokens)
        assert self.patch(client, tokens, evaluation, score_id="missing").status_code == 404

    def test_student_progress_lists_results(self, client, db, tokens):
        evaluation, students = self.setup_evaluation(client, db, tokens)
        self.patch(client, tokens, evaluation, student_id=students[0].id, grading_complete=True, **PASSING)
        summatives = client.get(f"/students/{students[0].id}/progress", params=auth(tokens["lead_instructor"])).json()["summative_evaluations"]
        assert summatives[0]["result"] == "Pass"
        assert summatives[0]["scenario"] == "Medical Emergency - Cardiac"


class TestListAndExport:
    def test_filter_by_student(self, client, db, tokens):
        students = make_students(db, 2)
        scenario = first_scenario(db)
        token = tokens["lead_instructor"]
        create_evaluation(client, token, scenario, students[:1])
        create_evaluation(client, token, scenario, students)
        params = auth(token)
        assert len(client.get("/summative/evaluations", params=params).json()) == 2
        assert len(client.get("/summative/evaluations", params={**params, "student_id": students[1].id}).json()) == 1

    def test_csv_export(self, client, db, tokens):
        students = make_students(db, 2)
        evaluation = create_evaluation(client, tokens["lead_instructor"], first_scenario(db), students).json()
        client.patch(
            f"/summative/evaluations/{evaluation['id']}/scores",
            params=auth(tokens["lead_instructor"]),
            json={"student_id": students[0].id, "grading_complete": True, **PASSING},
        )
        resp = client.get(f"/summative/evaluations/{evaluation['id']}/export", params=auth(tokens["lead_instructor"]))
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert "attachment" in resp.headers["content-disposition"]
        rows = list(csv.DictReader(io.StringIO(resp.text)))
        assert [r["student"] for r in rows] == ["S0 Adams", "S1 Brooks"]
        assert rows[0]["total_score"] == "12" and rows[0]["result"] == "Pass"
        assert rows[1]["Patient Assessment"] == "" and rows[1]["result"] == "Pending"
