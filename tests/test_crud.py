from sqlmodel import SQLModel, create_engine, Session

from neutronium import crud, models


def setup_db(tmp_path):
    db = tmp_path / 'crud.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    return engine


def test_one_active_session_per_box(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        box, created = crud.ensure_box(s, 'NE-2026-00001')
        assert created
        assert crud.ensure_box(s, 'NE-2026-00001')[1] is False
        p = crud.create_guest_player(s, 'Ava')

        gs = crud.create_session_with_host(s, box.box_id, 1, p.id, 'pink')
        assert gs is not None
        assert crud.create_session_with_host(s, box.box_id, 2, p.id, None) is None
        assert crud.create_chained_session(s, box.box_id, 2, p.id, [(p.id, 'pink')]) is None

        # once completed the box takes a new session
        assert crud.complete_session(s, gs.id, record_progress=False)
        nxt = crud.create_chained_session(s, box.box_id, 2, p.id, [(p.id, 'pink')])
        assert nxt is not None
        assert crud.get_active_session_for_box(s, box.box_id).id == nxt.id


def test_complete_session_has_a_single_winner(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        crud.ensure_box(s, 'NE-2026-00001')
        p = crud.create_guest_player(s, 'Ava')
        gs = crud.create_session_with_host(s, 'NE-2026-00001', 1, p.id, None)
        sp = crud.get_session_player(s, gs.id, p.id)
        crud.record_score(s, sp, 17)

        assert crud.complete_session(s, gs.id) is True
        assert crud.complete_session(s, gs.id) is False
        entry = crud.get_journal_entry(s, p.id, 1)
        assert entry.best_nn == 17
        assert entry.session_id == gs.id
        assert crud.get_session_by_id(s, gs.id).status == models.STATUS_COMPLETED


def test_set_session_level_only_touches_active_sessions(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        crud.ensure_box(s, 'NE-2026-00001')
        p = crud.create_guest_player(s, 'Ava')
        gs = crud.create_session_with_host(s, 'NE-2026-00001', 3, p.id, None)

        assert crud.set_session_level(s, gs, 2) is True
        assert gs.universe_level == 2

        assert crud.complete_session(s, gs.id, record_progress=False)
        assert crud.set_session_level(s, gs, 1) is False
        s.expire_all()
        done = crud.get_session_by_id(s, gs.id)
        assert done.universe_level == 2
        assert done.status == models.STATUS_COMPLETED


def test_membership_helpers(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        crud.ensure_box(s, 'NE-2026-00001')
        a = crud.create_guest_player(s, 'Ava')
        b = crud.create_guest_player(s, 'Ben')
        gs = crud.create_session_with_host(s, 'NE-2026-00001', 1, a.id, 'pink')

        assert crud.add_session_player(s, gs.id, b.id, 'green', starting_nn=3).starting_nn == 3
        assert crud.add_session_player(s, gs.id, b.id, 'gray') is None
        assert sorted(crud.taken_colors(s, gs.id)) == ['green', 'pink']
        assert crud.taken_colors(s, gs.id, [b.id]) == ['pink']

        removed = crud.remove_session_player(s, gs.id, b.id)
        assert removed.color == 'green'
        assert removed.starting_nn == 3
        assert crud.remove_session_player(s, gs.id, b.id) is None
        assert [m.player_id for m in crud.list_session_players(s, gs.id)] == [a.id]


def test_magic_token_is_single_use(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        mt = crud.create_magic_token(s, 'ava@example.com', None, 15)
        assert len(mt.token) == 64
        assert crud.get_unused_magic_token(s, mt.token).id == mt.id
        assert crud.consume_magic_token(s, mt.id) is True
        assert crud.consume_magic_token(s, mt.id) is False
        assert crud.get_unused_magic_token(s, mt.token) is None

        crud.delete_magic_token(s, mt.token)
        crud.delete_magic_token(s, mt.token)


def test_max_unlocked_level_from_journal(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        guest = crud.create_guest_player(s, 'Ben')
        crud.upsert_progress(s, guest.id, 1, 5, None)
        ava = crud.create_registered_player(s, 'ava@example.com', 'Ava')
        for lvl in (1, 2, 3):
            crud.upsert_progress(s, ava.id, lvl, 5, None)
        s.commit()

        assert crud.max_unlocked_level(s, guest.id) == 1
        assert crud.max_unlocked_level(s, ava.id) == 4
        assert crud.max_unlocked_level(s, 'missing') == 1

        upgraded = crud.attach_email(s, guest, 'ben@example.com')
        assert upgraded.is_guest is False
        assert crud.max_unlocked_level(s, guest.id) == 2
